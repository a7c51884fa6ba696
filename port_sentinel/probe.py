from __future__ import annotations

import asyncio
from typing import Awaitable, Iterable, TypeVar

import structlog

from port_sentinel.models import CheckFailure, CheckResult, CheckSpec, Device, DeviceResult


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def create_limiter(max_concurrent: int) -> asyncio.Semaphore:
    """Process-wide cap on simultaneous TCP connects, shared by every probe."""
    max_concurrent = int(max_concurrent)
    if max_concurrent < 1:
        raise ValueError(f"max_concurrent_connections must be greater than 0, got {max_concurrent}")
    return asyncio.Semaphore(max_concurrent)


async def _open_tcp_connection(ip: str, port: int) -> tuple[asyncio.StreamReader, asyncio.StreamWriter]:
    return await asyncio.open_connection(host=ip, port=port)


async def _close_writer(writer: asyncio.StreamWriter) -> None:
    try:
        writer.close()
        await writer.wait_closed()
    except Exception:
        pass


async def probe_tcp(ip: str, port: int, timeout_seconds: float, limiter: asyncio.Semaphore) -> bool:
    """
    Single TCP handshake against ip:port.

    Refused, timed out, unreachable and unresolvable all return False; nothing
    is raised to the caller. The limiter slot is held for the whole attempt,
    including closing the connection.
    """
    async with limiter:
        try:
            _, writer = await asyncio.wait_for(
                _open_tcp_connection(ip, int(port)),
                timeout=float(timeout_seconds),
            )
        except Exception as exc:
            logger.debug("probe_failed", ip=ip, port=port, error=f"{type(exc).__name__}: {exc}")
            return False
        await _close_writer(writer)
        return True


async def collect_as_completed(aws: Iterable[Awaitable[T]]) -> list[T]:
    """
    Run every awaitable as its own task and return results in completion order.

    Nothing is cancelled early: the call returns once all tasks are done. If
    the caller itself is cancelled, still-running tasks are cancelled too.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    results: list[T] = []
    try:
        for fut in asyncio.as_completed(tasks):
            results.append(await fut)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
    return results


async def check_across_ips(
    check: CheckSpec,
    ips: Iterable[str],
    timeout_seconds: float,
    limiter: asyncio.Semaphore,
) -> CheckResult:
    async def _run_one(ip: str) -> tuple[str, bool]:
        return ip, await probe_tcp(ip, check.port, timeout_seconds, limiter)

    any_success = False
    failed_ips: list[str] = []
    for ip, ok in await collect_as_completed(_run_one(ip) for ip in ips):
        if ok:
            any_success = True
        else:
            failed_ips.append(ip)
    return CheckResult(passed=any_success, failed_ips=failed_ips)


async def evaluate_device(device: Device, timeout_seconds: float, limiter: asyncio.Semaphore) -> DeviceResult:
    async def _run_check(check: CheckSpec) -> tuple[CheckSpec, CheckResult]:
        return check, await check_across_ips(check, device.ips, timeout_seconds, limiter)

    failures: list[CheckFailure] = []
    for check, result in await collect_as_completed(_run_check(check) for check in device.checks):
        if result.passed:
            continue
        failures.append(
            CheckFailure(
                check_name=check.display_name,
                port=check.port,
                failed_ips=list(result.failed_ips),
            )
        )
    return DeviceResult(device=device, healthy=not failures, failures=failures)
