from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Sequence

import structlog

from port_sentinel.alert_state import AlertState
from port_sentinel.config import MonitorSettings
from port_sentinel.models import CheckFailure, Device, DeviceResult
from port_sentinel.probe import collect_as_completed, create_limiter, evaluate_device


logger = structlog.get_logger(__name__)

NotifyFn = Callable[[Device, Sequence[CheckFailure]], Awaitable[Any]]

STATS_EVERY_ROUNDS = 10


@dataclass
class MonitorStats:
    rounds: int = 0
    total_alerts: int = 0
    recoveries: int = 0


@dataclass(frozen=True)
class RoundSummary:
    round_number: int
    failed_by_group: dict[str, list[DeviceResult]]
    alerts_sent: int
    recovered: list[str]
    elapsed_seconds: float

    @property
    def failed_count(self) -> int:
        return sum(len(v) for v in self.failed_by_group.values())


@dataclass
class RoundOrchestrator:
    """
    Polling loop: every round probes all devices concurrently, feeds the
    results through the alert state and sends notifications one at a time.

    ``alert_state`` is only ever touched while holding ``alert_lock``; the
    lock is released while a notification is in flight.
    """

    devices: Sequence[Device]
    settings: MonitorSettings
    notify: NotifyFn
    alert_state: AlertState = field(default_factory=AlertState)
    alert_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    limiter: asyncio.Semaphore | None = None
    clock: Callable[[], float] = time.time
    monotonic: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    stats: MonitorStats = field(default_factory=MonitorStats)

    def __post_init__(self) -> None:
        self.devices = tuple(self.devices)
        if self.limiter is None:
            self.limiter = create_limiter(self.settings.max_concurrent_connections)

    async def _safe_evaluate(self, device: Device) -> DeviceResult:
        try:
            return await evaluate_device(device, self.settings.timeout_seconds, self.limiter)
        except Exception as exc:
            logger.exception("device_check_crashed", device_id=device.id, error=f"{type(exc).__name__}: {exc}")
            failures = [
                CheckFailure(check_name=check.display_name, port=check.port, failed_ips=list(device.ips))
                for check in device.checks
            ]
            return DeviceResult(device=device, healthy=False, failures=failures)

    async def _record_recoveries(self, results: Iterable[DeviceResult]) -> list[str]:
        recovered: list[str] = []
        for result in results:
            async with self.alert_lock:
                was_failed = self.alert_state.mark_recovered(result.device.id)
            if was_failed:
                self.stats.recoveries += 1
                recovered.append(result.device.id)
                logger.info("device_recovered", device=result.device.name, device_id=result.device.id)
        return recovered

    async def _deliver(self, result: DeviceResult) -> None:
        try:
            await self.notify(result.device, result.failures)
        except Exception as exc:
            logger.exception("notify_crashed", device_id=result.device.id, error=f"{type(exc).__name__}: {exc}")

    async def _send_alerts(self, failed_by_group: dict[str, list[DeviceResult]]) -> int:
        now = self.clock()
        cooldown = self.settings.alert_cooldown_seconds
        sent = 0
        for group, group_results in failed_by_group.items():
            logger.debug("group_failures", group=group, failed=len(group_results))
            for result in group_results:
                device_id = result.device.id
                async with self.alert_lock:
                    fire = self.alert_state.should_alert(device_id, True, now, cooldown)
                    last_ts = self.alert_state.last_alert_ts(device_id)
                if not fire:
                    logger.debug("alert_suppressed", device_id=device_id, last_alert_ts=last_ts, cooldown=cooldown)
                    continue
                sent += 1
                self.stats.total_alerts += 1
                logger.warning(
                    "device_failed",
                    device=result.device.name,
                    device_id=device_id,
                    group=group,
                    failed_checks=[f.check_name for f in result.failures],
                )
                # Serialised on purpose: the next failing device waits for this delivery.
                await self._deliver(result)
        return sent

    def _log_round(self, summary: RoundSummary) -> None:
        elapsed = round(summary.elapsed_seconds, 3)
        if not summary.failed_by_group:
            logger.info("round_ok", round=summary.round_number, elapsed_seconds=elapsed)
        else:
            logger.warning(
                "round_failures",
                round=summary.round_number,
                failed_devices=summary.failed_count,
                alerts_sent=summary.alerts_sent,
                elapsed_seconds=elapsed,
            )
        if summary.round_number % STATS_EVERY_ROUNDS == 0:
            logger.info(
                "cumulative_stats",
                rounds=self.stats.rounds,
                alerts=self.stats.total_alerts,
                recoveries=self.stats.recoveries,
            )

    async def run_round(self) -> RoundSummary:
        self.stats.rounds += 1
        round_number = self.stats.rounds
        started = self.monotonic()

        results = await collect_as_completed(self._safe_evaluate(device) for device in self.devices)

        failed_by_group: dict[str, list[DeviceResult]] = {}
        for result in results:
            if not result.healthy:
                failed_by_group.setdefault(result.device.group, []).append(result)

        recovered = await self._record_recoveries(r for r in results if r.healthy)
        alerts_sent = await self._send_alerts(failed_by_group)

        summary = RoundSummary(
            round_number=round_number,
            failed_by_group=failed_by_group,
            alerts_sent=alerts_sent,
            recovered=recovered,
            elapsed_seconds=self.monotonic() - started,
        )
        self._log_round(summary)
        return summary

    async def run(self, rounds: int | None = None) -> MonitorStats:
        """Run ``rounds`` rounds (forever when None), pacing them by the interval."""
        completed = 0
        while rounds is None or completed < rounds:
            summary = await self.run_round()
            completed += 1
            if rounds is not None and completed >= rounds:
                break
            # An overrunning round starts the next one immediately; no catch-up.
            remaining = self.settings.interval_seconds - summary.elapsed_seconds
            if remaining > 0:
                await self.sleep(remaining)
        return self.stats

    async def run_forever(self) -> None:
        await self.run()


async def run_until_shutdown(orchestrator: RoundOrchestrator, shutdown: asyncio.Event) -> bool:
    """
    Race the polling loop against ``shutdown``. The loser is cancelled.

    Returns True when shutdown was requested; an unexpected crash of the loop
    is re-raised.
    """
    loop_task = asyncio.create_task(orchestrator.run_forever())
    stop_task = asyncio.create_task(shutdown.wait())
    tasks = {loop_task, stop_task}
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if loop_task in done and not loop_task.cancelled():
        loop_task.result()
    return stop_task in done
