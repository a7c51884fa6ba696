"""Configuration loading, validation and default-file generation."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from port_sentinel.models import CheckSpec, Device


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
WEBHOOK_ENV_VAR = "WEBHOOK_URL"
WEBHOOK_PLACEHOLDER = "${WEBHOOK_URL}"

DEFAULT_CONFIG_TEMPLATE = """\
# Port Sentinel config
# Copy a device entry to add new devices without modifying code.
# Sensitive values should be injected via env vars: export WEBHOOK_URL="xxx"

settings:
  # Polling interval (seconds), min 5, recommended 15-60
  interval: 15
  # Single TCP connection timeout (seconds), range 1-30; 3 for intranet, 10 for public network
  timeout: 3
  # Alert cooldown for the same device (seconds), recommended 300 (5min)
  alert_cooldown: 300
  # Robot webhook; ${WEBHOOK_URL} is replaced by the env var when set
  # Production recommendation: webhook: "${WEBHOOK_URL}"
  webhook: "https://qyapi.weixin.qq.com/cgi-bin/webhook/send?key=YOUR_KEY_HERE"
  # Log level: debug | info | warn | error
  log_level: info
  # Max concurrent connections, recommended = CPU cores * 10
  max_concurrent_connections: 100

devices:
  - id: example-server-01
    name: Example Server
    group: example
    priority: medium          # critical | high | medium | low
    ips: ["192.168.1.100"]
    os: linux
    location: Room A/Rack 01
    checks:
      - {port: 22, name: SSH Service}
      - {port: 80, name: HTTP Service}
      - {port: 443, name: HTTPS Service}

  # - id: redis-master-01
  #   name: Redis Master Node
  #   group: database
  #   priority: critical
  #   ips: ["192.168.1.133", "192.168.1.128"]
  #   os: linux
  #   location: Core Rack
  #   checks:
  #     - {port: 6379, name: Redis Service}
"""


class ConfigError(ValueError):
    pass


class SettingsModel(BaseModel):
    interval: int = Field(..., ge=5, description="Polling interval in seconds")
    timeout: int = Field(..., ge=1, le=30, description="Per-probe TCP connect timeout in seconds")
    alert_cooldown: int = Field(..., ge=0, description="Minimum seconds between alerts for one device")
    webhook: str = Field(..., description="Markdown robot webhook URL")
    log_level: str = Field(default="info", description="debug | info | warn | error")
    max_concurrent_connections: int = Field(default=100, gt=0, description="Global cap on in-flight probes")

    @field_validator("webhook")
    @classmethod
    def _check_webhook(cls, value: str) -> str:
        value = (value or "").strip()
        if not value or not value.startswith("http"):
            raise ValueError(
                f"webhook URL is required and must start with http/https. Current value: {value!r}. "
                f"Please set {WEBHOOK_ENV_VAR} environment variable or edit the config file"
            )
        try:
            httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"webhook URL is malformed: {exc}") from exc
        return value


class CheckModel(BaseModel):
    port: int = Field(..., ge=1, le=65535)
    name: str = ""


class DeviceModel(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    group: str = ""
    priority: str = "low"
    ips: list[str] = Field(..., min_length=1)
    os: str = ""
    location: str = ""
    checks: list[CheckModel] = Field(default_factory=list)

    @field_validator("ips")
    @classmethod
    def _strip_ips(cls, value: list[str]) -> list[str]:
        ips = [str(ip).strip() for ip in value]
        if any(not ip for ip in ips):
            raise ValueError("ips must not contain empty entries")
        return ips

    def to_device(self) -> Device:
        return Device(
            id=self.id,
            name=self.name or self.id,
            group=self.group,
            priority=self.priority,
            ips=tuple(self.ips),
            os=self.os,
            location=self.location,
            checks=tuple(CheckSpec(port=c.port, name=c.name.strip()) for c in self.checks),
        )


class ConfigModel(BaseModel):
    settings: SettingsModel
    devices: list[DeviceModel] = Field(default_factory=list)


@dataclass(frozen=True)
class MonitorSettings:
    interval_seconds: float
    timeout_seconds: float
    alert_cooldown_seconds: float
    webhook_url: str
    log_level: str = "info"
    max_concurrent_connections: int = 100


@dataclass(frozen=True)
class SentinelConfig:
    settings: MonitorSettings
    devices: tuple[Device, ...]


def substitute_env(text: str, env: dict[str, str] | None = None) -> str:
    env = os.environ if env is None else env
    value = env.get(WEBHOOK_ENV_VAR)
    if value is None:
        return text
    return text.replace(WEBHOOK_PLACEHOLDER, value)


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def parse_config(data: Any) -> SentinelConfig:
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    try:
        model = ConfigModel.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc

    s = model.settings
    settings = MonitorSettings(
        interval_seconds=float(s.interval),
        timeout_seconds=float(s.timeout),
        alert_cooldown_seconds=float(s.alert_cooldown),
        webhook_url=s.webhook,
        log_level=s.log_level,
        max_concurrent_connections=int(s.max_concurrent_connections),
    )
    return SentinelConfig(settings=settings, devices=tuple(d.to_device() for d in model.devices))


def load_config(path: Path, env: dict[str, str] | None = None) -> SentinelConfig:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc
    try:
        data = yaml.safe_load(substitute_env(text, env)) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    return parse_config(data)


def create_default_config(path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_TEMPLATE, encoding="utf-8")
    if os.name == "posix":
        try:
            path.chmod(0o600)
        except OSError as exc:
            logger.warning("config_chmod_failed", path=str(path), error=str(exc))


def ensure_config_exists(path: Path) -> bool:
    """Return True when the file already existed, False when a default was written."""
    path = Path(path)
    if path.exists():
        return True
    create_default_config(path)
    return False
