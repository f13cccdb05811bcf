"""Exception hierarchy shared across netwatch components."""

from __future__ import annotations


class NetwatchError(RuntimeError):
    """Base class for runtime failures raised by netwatch collaborators."""


class ProbeError(NetwatchError):
    """Raised when interface enumeration itself fails."""


class APError(NetwatchError):
    """Raised by access point drivers when a lifecycle step fails."""

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.step = step


class ConnectorError(NetwatchError):
    """Raised when the upstream connection tooling is unusable."""


class SupervisorStartupError(NetwatchError):
    """Raised when a startup precondition prevents the supervisor loop."""


class ConfigError(ValueError):
    """Raised for invalid configuration files or values."""


__all__ = [
    "NetwatchError",
    "ProbeError",
    "APError",
    "ConnectorError",
    "SupervisorStartupError",
    "ConfigError",
]
