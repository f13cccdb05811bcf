"""Configuration loading for netwatch."""
from __future__ import annotations

import ipaddress
import json
import logging
import math
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("/etc/netwatch/config.json")
DEFAULT_STATE_DIR = Path("/var/lib/netwatch")
DEFAULT_PING_TARGET = "8.8.8.8"
DEFAULT_SSID_SUFFIX = "-setup"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

logger = logging.getLogger(__name__)


def _positive_float(value: object, name: str, *, allow_zero: bool = False) -> float:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric") from exc
    if not math.isfinite(number) or number < 0 or (number == 0 and not allow_zero):
        raise ConfigError(f"{name} must be a positive finite number")
    return number


def _positive_int(value: object, name: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be an integer")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer") from exc
    if number < 1:
        raise ConfigError(f"{name} must be at least 1")
    return number


@dataclass(frozen=True, slots=True)
class SupervisorSettings:
    """Timing and retry policy of the supervisor loop."""

    poll_interval: float = 10.0
    max_consecutive_failures: int = 5
    max_backoff_interval: float = 300.0
    dwell_cycles: int = 1
    session_timeout: float | None = None
    connect_timeout: float = 45.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "poll_interval", _positive_float(self.poll_interval, "poll_interval"))
        object.__setattr__(
            self,
            "max_consecutive_failures",
            _positive_int(self.max_consecutive_failures, "max_consecutive_failures"),
        )
        backoff = _positive_float(self.max_backoff_interval, "max_backoff_interval")
        if backoff < self.poll_interval:
            raise ConfigError("max_backoff_interval must not be shorter than poll_interval")
        object.__setattr__(self, "max_backoff_interval", backoff)
        object.__setattr__(self, "dwell_cycles", _positive_int(self.dwell_cycles, "dwell_cycles"))
        if self.session_timeout is not None:
            object.__setattr__(
                self, "session_timeout", _positive_float(self.session_timeout, "session_timeout")
            )
        object.__setattr__(
            self, "connect_timeout", _positive_float(self.connect_timeout, "connect_timeout")
        )


@dataclass(frozen=True, slots=True)
class ProbeSettings:
    """Reachability check parameters for the link prober."""

    ping_target: str = DEFAULT_PING_TARGET
    ping_timeout: float = 5.0
    command_timeout: float = 15.0

    def __post_init__(self) -> None:
        target = self.ping_target.strip() if isinstance(self.ping_target, str) else ""
        if not target:
            raise ConfigError("ping_target must be a non-empty host or address")
        object.__setattr__(self, "ping_target", target)
        ping_timeout = _positive_float(self.ping_timeout, "ping_timeout")
        if ping_timeout < 1:
            raise ConfigError("ping_timeout must be at least one second")
        object.__setattr__(self, "ping_timeout", ping_timeout)
        object.__setattr__(
            self, "command_timeout", _positive_float(self.command_timeout, "command_timeout")
        )


@dataclass(frozen=True, slots=True)
class AccessPointSettings:
    """Defaults used to build the provisioning access point configuration."""

    interface: str | None = None
    ssid: str | None = None
    channel: int = 6
    subnet: str = "192.168.4.0/24"
    portal_port: int = 80
    passphrase: str | None = None
    verify_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.interface is not None:
            cleaned = self.interface.strip()
            object.__setattr__(self, "interface", cleaned or None)
        if self.ssid is not None:
            cleaned_ssid = self.ssid.strip()
            if len(cleaned_ssid) > 32:
                raise ConfigError("Access point SSID must be at most 32 characters")
            object.__setattr__(self, "ssid", cleaned_ssid or None)
        if isinstance(self.channel, bool) or not isinstance(self.channel, int):
            raise ConfigError("Access point channel must be an integer")
        if not 1 <= self.channel <= 14:
            raise ConfigError("Access point channel must be between 1 and 14")
        try:
            network = ipaddress.IPv4Network(self.subnet, strict=True)
        except ValueError as exc:
            raise ConfigError(f"Invalid access point subnet {self.subnet!r}: {exc}") from exc
        if network.num_addresses < 64:
            raise ConfigError("Access point subnet must hold at least 64 addresses")
        if not 1 <= int(self.portal_port) <= 65535:
            raise ConfigError("portal_port must be a valid TCP port")
        if self.passphrase is not None and not 8 <= len(self.passphrase) <= 63:
            raise ConfigError("Access point passphrase must be 8-63 characters")
        object.__setattr__(
            self, "verify_timeout", _positive_float(self.verify_timeout, "verify_timeout")
        )


@dataclass(frozen=True, slots=True)
class PathSettings:
    """Filesystem locations used by netwatch."""

    status_path: Path = DEFAULT_STATE_DIR / "status.json"
    event_log_path: Path = DEFAULT_STATE_DIR / "events.jsonl"
    runtime_dir: Path = Path("/run/netwatch")

    def __post_init__(self) -> None:
        for name in ("status_path", "event_log_path", "runtime_dir"):
            value = getattr(self, name)
            if not isinstance(value, (str, Path)) or not str(value).strip():
                raise ConfigError(f"{name} must be a non-empty path")
            object.__setattr__(self, name, Path(value))


@dataclass(frozen=True, slots=True)
class NetwatchSettings:
    """Complete configuration tree."""

    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    access_point: AccessPointSettings = field(default_factory=AccessPointSettings)
    paths: PathSettings = field(default_factory=PathSettings)
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        level = self.log_level.strip().upper() if isinstance(self.log_level, str) else ""
        if level not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        object.__setattr__(self, "log_level", level)

    def to_dict(self) -> dict[str, object]:
        return {
            "supervisor": {
                "poll_interval": self.supervisor.poll_interval,
                "max_consecutive_failures": self.supervisor.max_consecutive_failures,
                "max_backoff_interval": self.supervisor.max_backoff_interval,
                "dwell_cycles": self.supervisor.dwell_cycles,
                "session_timeout": self.supervisor.session_timeout,
                "connect_timeout": self.supervisor.connect_timeout,
            },
            "probe": {
                "ping_target": self.probe.ping_target,
                "ping_timeout": self.probe.ping_timeout,
                "command_timeout": self.probe.command_timeout,
            },
            "access_point": {
                "interface": self.access_point.interface,
                "ssid": self.access_point.ssid,
                "channel": self.access_point.channel,
                "subnet": self.access_point.subnet,
                "portal_port": self.access_point.portal_port,
                "passphrase": "<hidden>" if self.access_point.passphrase else None,
                "verify_timeout": self.access_point.verify_timeout,
            },
            "paths": {
                "status_path": str(self.paths.status_path),
                "event_log_path": str(self.paths.event_log_path),
                "runtime_dir": str(self.paths.runtime_dir),
            },
            "log_level": self.log_level,
        }


_SECTIONS: dict[str, type] = {
    "supervisor": SupervisorSettings,
    "probe": ProbeSettings,
    "access_point": AccessPointSettings,
    "paths": PathSettings,
}


def _build_section(cls: type, payload: object, name: str) -> Any:
    if payload is None:
        return cls()
    if not isinstance(payload, Mapping):
        raise ConfigError(f"Configuration section {name!r} must be an object")
    known = set(cls.__dataclass_fields__)  # type: ignore[attr-defined]
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {name!r}: {', '.join(unknown)}")
    try:
        return cls(**dict(payload))
    except TypeError as exc:
        raise ConfigError(f"Invalid {name!r} section: {exc}") from exc


def parse_settings(payload: Mapping[str, object]) -> NetwatchSettings:
    """Build settings from a decoded JSON object."""

    if not isinstance(payload, Mapping):
        raise ConfigError("Configuration file must contain a JSON object")
    unknown = sorted(set(payload) - set(_SECTIONS) - {"log_level"})
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(unknown)}")
    sections = {
        name: _build_section(cls, payload.get(name), name) for name, cls in _SECTIONS.items()
    }
    log_level = payload.get("log_level", "INFO")
    if not isinstance(log_level, str):
        raise ConfigError("log_level must be a string")
    return NetwatchSettings(log_level=log_level, **sections)


def _apply_env_overrides(
    settings: NetwatchSettings, environ: Mapping[str, str]
) -> NetwatchSettings:
    def _override(env_name: str, apply) -> None:
        nonlocal settings
        raw = environ.get(env_name)
        if raw is None or not raw.strip():
            return
        try:
            settings = apply(raw.strip())
        except (ConfigError, ValueError) as exc:
            logger.warning("Invalid %s value %r; ignoring (%s)", env_name, raw, exc)

    _override(
        "NETWATCH_POLL_INTERVAL",
        lambda raw: replace(
            settings,
            supervisor=replace(settings.supervisor, poll_interval=float(raw)),
        ),
    )
    _override(
        "NETWATCH_STATUS_PATH",
        lambda raw: replace(settings, paths=replace(settings.paths, status_path=Path(raw))),
    )
    _override(
        "NETWATCH_AP_SSID",
        lambda raw: replace(settings, access_point=replace(settings.access_point, ssid=raw)),
    )
    _override(
        "NETWATCH_AP_INTERFACE",
        lambda raw: replace(settings, access_point=replace(settings.access_point, interface=raw)),
    )
    _override(
        "NETWATCH_PING_TARGET",
        lambda raw: replace(settings, probe=replace(settings.probe, ping_target=raw)),
    )
    _override("NETWATCH_LOG_LEVEL", lambda raw: replace(settings, log_level=raw))
    return settings


def load_settings(
    path: Path | str | None = DEFAULT_CONFIG_PATH,
    *,
    environ: Mapping[str, str] | None = None,
) -> NetwatchSettings:
    """Load settings from ``path`` (when present) and the environment."""

    settings = NetwatchSettings()
    if path is not None:
        config_path = Path(path)
        if config_path.exists():
            try:
                payload = json.loads(config_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise ConfigError(f"Unable to read configuration {config_path}: {exc}") from exc
            settings = parse_settings(payload)
        else:
            logger.debug("Configuration file %s not found; using defaults", config_path)
    return _apply_env_overrides(settings, os.environ if environ is None else environ)


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_PING_TARGET",
    "DEFAULT_SSID_SUFFIX",
    "AccessPointSettings",
    "NetwatchSettings",
    "PathSettings",
    "ProbeSettings",
    "SupervisorSettings",
    "load_settings",
    "parse_settings",
]
