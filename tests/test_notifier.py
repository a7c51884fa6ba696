from __future__ import annotations

import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from port_sentinel.models import CheckFailure, Device
from port_sentinel.notifier import (
    RetryPolicy,
    WebhookNotifier,
    build_webhook_payload,
    redact_webhook_url,
    render_alert_markdown,
)


DEVICE = Device(
    id="redis-master-01",
    name="Redis Master Node",
    group="database",
    priority="critical",
    ips=("192.168.1.133", "192.168.1.128"),
    os="linux",
    location="Core Rack",
)


class _WebhookHandler(BaseHTTPRequestHandler):
    statuses: list[int] = []
    bodies: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_POST(self) -> None:  # noqa: N802
        n = int(self.headers.get("Content-Length") or "0")
        raw = self.rfile.read(n) if n > 0 else b"{}"
        type(self).bodies.append(json.loads(raw.decode("utf-8")))
        queue = type(self).statuses
        status = queue.pop(0) if queue else 200
        body = b'{"errcode":0}'
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture()
def webhook_url() -> str:
    _WebhookHandler.statuses = []
    _WebhookHandler.bodies = []
    httpd = HTTPServer(("127.0.0.1", 0), _WebhookHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}/cgi-bin/webhook/send?key=secret"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


class _SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_retry_policy_defaults() -> None:
    policy = RetryPolicy()
    assert policy.max_attempts == 3
    assert [policy.backoff_seconds(a) for a in (1, 2)] == [0.5, 1.0]
    assert policy.should_retry(1) is True
    assert policy.should_retry(2) is True
    assert policy.should_retry(3) is False


def test_render_caps_ips_and_summarises() -> None:
    many = [f"10.0.0.{i}" for i in range(13)]
    failures = [
        CheckFailure(check_name="Redis Service", port=6379, failed_ips=many),
        CheckFailure(check_name="port:22", port=22, failed_ips=["10.0.0.1", "10.0.0.2"]),
    ]
    text = render_alert_markdown(DEVICE, failures)

    assert text.startswith("🔴 **Redis Master Node**")
    assert "Location: Core Rack" in text
    assert "OS: linux" in text
    assert "Group: database" in text
    assert "Priority: critical" in text
    assert "Redis Service (Port: 6379)" in text
    assert "port:22 (Port: 22)" in text
    for ip in many[:10]:
        assert f"❌ {ip}\n" in text
    for ip in many[10:]:
        assert ip not in text
    assert "... 3 more IPs" in text
    # Not deduplicated: 10.0.0.1/10.0.0.2 count twice.
    assert "2 checks failed | 15 IPs affected" in text


@pytest.mark.parametrize(
    ("priority", "marker"),
    [("critical", "🔴"), ("high", "🟠"), ("medium", "🟡"), ("low", "🔵"), ("whatever", "🔵")],
)
def test_priority_marker(priority: str, marker: str) -> None:
    device = Device(id="x", name="X", ips=("1.2.3.4",), priority=priority)
    assert render_alert_markdown(device, []).startswith(f"{marker} **X**")


def test_payload_shape_and_url_redaction() -> None:
    assert build_webhook_payload("hi") == {"msgtype": "markdown", "markdown": {"content": "hi"}}
    assert redact_webhook_url("https://example.com/send?key=abc") == "https://example.com/send"


@pytest.mark.asyncio
async def test_notify_stops_on_first_success(webhook_url: str) -> None:
    sleep = _SleepRecorder()
    failures = [CheckFailure(check_name="HTTP", port=80, failed_ips=["192.168.1.133"])]
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(client=client, webhook_url=webhook_url, sleep=sleep)
        ok = await notifier.notify(DEVICE, failures)

    assert ok is True
    assert len(_WebhookHandler.bodies) == 1
    body = _WebhookHandler.bodies[0]
    assert body["msgtype"] == "markdown"
    assert "Redis Master Node" in body["markdown"]["content"]
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_notify_retries_non_2xx_then_succeeds(webhook_url: str) -> None:
    _WebhookHandler.statuses = [500, 502, 200]
    sleep = _SleepRecorder()
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(client=client, webhook_url=webhook_url, sleep=sleep)
        ok = await notifier.notify(DEVICE, [])

    assert ok is True
    assert len(_WebhookHandler.bodies) == 3
    assert sleep.calls == [0.5, 1.0]


@pytest.mark.asyncio
async def test_notify_gives_up_after_three_attempts(webhook_url: str) -> None:
    _WebhookHandler.statuses = [500, 500, 500, 200]
    sleep = _SleepRecorder()
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(client=client, webhook_url=webhook_url, sleep=sleep)
        ok = await notifier.notify(DEVICE, [])

    assert ok is False
    assert len(_WebhookHandler.bodies) == 3
    # No backoff after the final attempt.
    assert sleep.calls == [0.5, 1.0]


@pytest.mark.asyncio
async def test_notify_transport_error_is_swallowed() -> None:
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()

    sleep = _SleepRecorder()
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(
            client=client,
            webhook_url=f"http://127.0.0.1:{port}/send?key=secret",
            sleep=sleep,
        )
        ok = await notifier.notify(DEVICE, [])

    assert ok is False
    assert sleep.calls == [0.5, 1.0]


@pytest.mark.asyncio
async def test_notify_malformed_url_is_retried_and_swallowed() -> None:
    sleep = _SleepRecorder()
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(client=client, webhook_url="http://[::1/send", sleep=sleep)
        ok = await notifier.notify(DEVICE, [])

    assert ok is False
    assert sleep.calls == [0.5, 1.0]
