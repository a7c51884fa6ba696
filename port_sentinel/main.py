from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path

import httpx
import structlog

from port_sentinel import __version__
from port_sentinel.config import (
    DEFAULT_CONFIG_PATH,
    WEBHOOK_ENV_VAR,
    WEBHOOK_PLACEHOLDER,
    ConfigError,
    SentinelConfig,
    ensure_config_exists,
    load_config,
)
from port_sentinel.log import configure_logging, resolve_log_level
from port_sentinel.notifier import WebhookNotifier
from port_sentinel.runner import RoundOrchestrator, run_until_shutdown


logger = structlog.get_logger(__name__)

RULE = "═" * 58


def _print_banner() -> None:
    print()
    print(f"╔{RULE}╗")
    print(f"  🚀 port-sentinel v{__version__}")
    print("     Keep Your Network Heartbeat Steady")
    print(f"╚{RULE}╝")
    print()


def _print_default_config_help(path: Path) -> None:
    print(f"✅ Default config generated: {path}")
    if sys.platform != "win32":
        print("🔐 Config file permission set to 600 (read/write only for owner)")
    print("📝 Please edit the config file and restart the program:")
    print("   1. Set webhook to your robot webhook address")
    print("   2. Add devices to monitor")
    print(f"   3. Optional: inject secrets via export {WEBHOOK_ENV_VAR}=xxx")
    print()
    print(f"💡 Tip: {WEBHOOK_PLACEHOLDER} in the config is replaced by the env var")


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C surfaces as KeyboardInterrupt instead.
            logger.debug("signal_handler_unavailable", signal=sig.name)


async def run_sentinel(config: SentinelConfig, *, once: bool = False) -> int:
    settings = config.settings
    async with httpx.AsyncClient() as client:
        notifier = WebhookNotifier(client=client, webhook_url=settings.webhook_url)
        orchestrator = RoundOrchestrator(
            devices=config.devices,
            settings=settings,
            notify=notifier.notify,
        )
        if once:
            await orchestrator.run(rounds=1)
            return 0

        shutdown = asyncio.Event()
        _install_signal_handlers(shutdown)
        if await run_until_shutdown(orchestrator, shutdown):
            logger.warning("shutdown_signal_received")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Port Sentinel - TCP port reachability monitor")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Run one check round and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (debug, info, warn, error); LOG_LEVEL env var takes precedence",
    )
    args = parser.parse_args(argv)

    config_path = Path(args.config)
    try:
        existed = ensure_config_exists(config_path)
    except OSError as exc:
        print(f"✗ Config initialization failed: {exc}", file=sys.stderr)
        return 1
    if not existed:
        _print_default_config_help(config_path)
        return 0

    try:
        config = load_config(config_path)
    except ConfigError as exc:
        print(f"✗ Config load failed: {exc}", file=sys.stderr)
        return 1

    configure_logging(resolve_log_level(args.log_level, config.settings.log_level))
    _print_banner()

    settings = config.settings
    logger.info("config_detected", path=str(config_path))
    logger.info("startup", started_at=datetime.now().strftime("%Y-%m-%d %H:%M:%S"))
    logger.info(
        "config_loaded",
        devices=len(config.devices),
        interval_seconds=settings.interval_seconds,
        timeout_seconds=settings.timeout_seconds,
        alert_cooldown_seconds=settings.alert_cooldown_seconds,
        max_concurrent_connections=settings.max_concurrent_connections,
    )

    try:
        code = asyncio.run(run_sentinel(config, once=bool(args.once)))
    except KeyboardInterrupt:
        logger.warning("shutdown_signal_received")
        code = 0

    logger.info("exited")
    print(f"╔{RULE}╗")
    print("  Port Sentinel - Thank You!")
    print(f"╚{RULE}╝")
    return code


if __name__ == "__main__":
    raise SystemExit(main())
