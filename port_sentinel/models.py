from __future__ import annotations

from dataclasses import dataclass, field


PRIORITY_MARKERS = {
    "critical": "🔴",
    "high": "🟠",
    "medium": "🟡",
}
DEFAULT_PRIORITY_MARKER = "🔵"


@dataclass(frozen=True)
class CheckSpec:
    port: int
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name if self.name else f"port:{self.port}"


@dataclass(frozen=True)
class Device:
    id: str
    name: str
    ips: tuple[str, ...]
    checks: tuple[CheckSpec, ...] = ()
    group: str = ""
    priority: str = "low"
    os: str = ""
    location: str = ""

    @property
    def priority_marker(self) -> str:
        return PRIORITY_MARKERS.get((self.priority or "").strip().lower(), DEFAULT_PRIORITY_MARKER)


@dataclass(frozen=True)
class CheckFailure:
    check_name: str
    port: int
    # Completion order, not configuration order.
    failed_ips: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class CheckResult:
    passed: bool
    failed_ips: list[str]


@dataclass(frozen=True)
class DeviceResult:
    device: Device
    healthy: bool
    failures: list[CheckFailure]
