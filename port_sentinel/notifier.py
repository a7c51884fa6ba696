from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence
from urllib.parse import urlsplit, urlunsplit

import httpx
import structlog

from port_sentinel.models import CheckFailure, Device


logger = structlog.get_logger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 10.0
MAX_IPS_PER_CHECK = 10


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt bound and linear backoff for webhook delivery."""

    max_attempts: int = 3
    backoff_base_seconds: float = 0.5

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def backoff_seconds(self, attempt: int) -> float:
        return self.backoff_base_seconds * attempt


def _render_check_block(failure: CheckFailure) -> list[str]:
    lines = [f"┌─ 🔴 {failure.check_name} (Port: {failure.port})"]
    shown = failure.failed_ips[:MAX_IPS_PER_CHECK]
    hidden = len(failure.failed_ips) - len(shown)
    for idx, ip in enumerate(shown):
        connector = "│  └─" if idx == len(shown) - 1 and hidden <= 0 else "│  ├─"
        lines.append(f"{connector} ❌ {ip}")
    if hidden > 0:
        lines.append(f"│  └─ ... {hidden} more IPs")
    return lines


def render_failure_details(failures: Sequence[CheckFailure]) -> str:
    lines = ["```"]
    for idx, failure in enumerate(failures):
        lines.extend(_render_check_block(failure))
        if idx < len(failures) - 1:
            lines.append("│")
    affected_ips = sum(len(f.failed_ips) for f in failures)
    lines.append(f"└─ 📊 Stats: {len(failures)} checks failed | {affected_ips} IPs affected")
    lines.append("```")
    return "\n".join(lines)


def render_alert_markdown(device: Device, failures: Sequence[CheckFailure]) -> str:
    return (
        f"{device.priority_marker} **{device.name}** Failure Alert\n\n"
        f"> 📍 Location: {device.location}\n"
        f"> 💻 OS: {device.os} | 🏷️ Group: {device.group}\n"
        f"> ⚠️ Priority: {device.priority}\n\n"
        f"**Failure Details**:\n{render_failure_details(failures)}\n\n"
        "---\n"
        '<font color="warning">Recommendation: Check device power/network/service status</font>'
    )


def build_webhook_payload(content: str) -> dict[str, Any]:
    return {"msgtype": "markdown", "markdown": {"content": content}}


def redact_webhook_url(url: str) -> str:
    """Webhook keys travel in the query string; keep them out of logs."""
    s = (url or "").strip()
    try:
        parts = urlsplit(s)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
    except ValueError:
        return "<invalid-url>"


async def post_webhook(
    client: httpx.AsyncClient,
    url: str,
    payload: dict[str, Any],
    *,
    timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS,
) -> tuple[bool, str]:
    """One delivery attempt. Returns (ok, short description of the outcome)."""
    try:
        resp = await client.post(url, json=payload, timeout=timeout_seconds)
    except Exception as exc:
        msg = f"{type(exc).__name__}: {exc}"
        return False, msg.replace(url, redact_webhook_url(url))
    if resp.is_success:
        return True, f"HTTP {resp.status_code}"
    return False, f"HTTP {resp.status_code}"


@dataclass
class WebhookNotifier:
    """
    Renders a device failure report and POSTs it to the webhook.

    Delivery is best-effort: failed attempts are logged and retried per
    ``retry_policy``; when every attempt fails the error is logged and
    ``notify`` returns False without raising.
    """

    client: httpx.AsyncClient
    webhook_url: str
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float = WEBHOOK_TIMEOUT_SECONDS
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep

    async def notify(self, device: Device, failures: Sequence[CheckFailure]) -> bool:
        payload = build_webhook_payload(render_alert_markdown(device, failures))
        attempt = 0
        while True:
            attempt += 1
            ok, outcome = await post_webhook(
                self.client,
                self.webhook_url,
                payload,
                timeout_seconds=self.timeout_seconds,
            )
            if ok:
                logger.info("alert_delivered", device_id=device.id, attempt=attempt)
                return True
            logger.warning(
                "alert_delivery_failed",
                device_id=device.id,
                attempt=attempt,
                max_attempts=self.retry_policy.max_attempts,
                outcome=outcome,
            )
            if not self.retry_policy.should_retry(attempt):
                break
            await self.sleep(self.retry_policy.backoff_seconds(attempt))

        logger.error(
            "alert_dropped",
            device_id=device.id,
            attempts=attempt,
            webhook=redact_webhook_url(self.webhook_url),
        )
        return False
