"""Provisioning sessions and the access point start/stop hooks."""

from __future__ import annotations

import enum
import logging
import socket
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable

from .ap import APConfig, APController
from .config import DEFAULT_SSID_SUFFIX, AccessPointSettings
from .system_log import SystemLog

logger = logging.getLogger(__name__)


class SessionOutcome(str, enum.Enum):
    CONNECTED = "connected"
    TIMED_OUT = "timed-out"
    ABORTED = "aborted"


@dataclass(slots=True)
class ProvisioningSession:
    """One stretch of time during which the provisioning AP is offered."""

    interface: str
    ssid: str
    subnet: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    closed_at: float | None = None
    outcome: SessionOutcome | None = None
    connected_ssid: str | None = None
    connect_attempts: int = 0

    @property
    def closed(self) -> bool:
        return self.outcome is not None

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.started_at

    def close(self, outcome: SessionOutcome, connected_ssid: str | None = None) -> bool:
        """Close the session once; later calls are ignored and return ``False``."""

        if self.closed:
            return False
        self.outcome = SessionOutcome(outcome)
        self.closed_at = time.time()
        if self.outcome is SessionOutcome.CONNECTED:
            self.connected_ssid = connected_ssid
        return True

    def to_dict(self) -> dict[str, object | None]:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "interface": self.interface,
            "ssid": self.ssid,
            "subnet": self.subnet,
            "closed_at": self.closed_at,
            "outcome": self.outcome.value if self.outcome else None,
            "connected_ssid": self.connected_ssid,
            "connect_attempts": self.connect_attempts,
        }


def default_ssid(hostname: str | None = None) -> str:
    name = (hostname or socket.gethostname() or "netwatch").split(".")[0].strip() or "netwatch"
    # Keep the suffix intact when trimming to the 32 byte SSID limit.
    room = 32 - len(DEFAULT_SSID_SUFFIX)
    return name.encode("utf-8")[:room].decode("utf-8", errors="ignore") + DEFAULT_SSID_SUFFIX


class ProvisioningService:
    """Start and stop hooks the supervisor calls around provisioning."""

    def __init__(
        self,
        controller: APController,
        settings: AccessPointSettings | None = None,
        system_log: SystemLog | None = None,
        *,
        hostname_provider: Callable[[], str] = socket.gethostname,
    ) -> None:
        self._controller = controller
        self._settings = settings or AccessPointSettings()
        self._system_log = system_log
        self._hostname_provider = hostname_provider
        self._session: ProvisioningSession | None = None

    @property
    def session(self) -> ProvisioningSession | None:
        return self._session

    @property
    def controller(self) -> APController:
        return self._controller

    def build_config(self, interface: str) -> APConfig:
        settings = self._settings
        return APConfig(
            interface=settings.interface or interface,
            ssid=settings.ssid or default_ssid(self._hostname_provider()),
            channel=settings.channel,
            subnet=settings.subnet,
            portal_port=settings.portal_port,
            passphrase=settings.passphrase,
        )

    def start(self, interface: str) -> ProvisioningSession | None:
        """Bring the access point up and open a new session."""

        try:
            config = self.build_config(interface)
        except ValueError as exc:
            self._record("provisioning_config_invalid", f"Invalid access point configuration: {exc}.", level="error")
            return None
        result = self._controller.activate(config)
        if not result.success:
            self._record(
                "provisioning_start_failed",
                f"Unable to start provisioning: {result.error}.",
                level="error",
                metadata={"step": result.step},
            )
            return None
        session = ProvisioningSession(interface=config.interface, ssid=config.ssid, subnet=config.subnet)
        self._session = session
        self._record(
            "session_started",
            f"Provisioning access point {config.ssid} available on {config.interface}.",
            metadata={"session_id": session.session_id, "ssid": config.ssid},
        )
        return session

    def resume(self, session: ProvisioningSession) -> bool:
        """Re-activate the access point for an already open session."""

        if session.closed:
            return False
        result = self._controller.activate(self.build_config(session.interface))
        if not result.success:
            self._record(
                "provisioning_resume_failed",
                f"Unable to restore provisioning access point: {result.error}.",
                level="error",
                metadata={"session_id": session.session_id, "step": result.step},
            )
            return False
        self._session = session
        return True

    def suspend(self) -> bool:
        """Take the access point down without ending the session."""

        result = self._controller.deactivate()
        if not result.success:
            self._record(
                "provisioning_suspend_failed",
                f"Unable to stop access point: {result.error}.",
                level="error",
                metadata={"step": result.step},
            )
        return result.success

    def stop(self, outcome: SessionOutcome, connected_ssid: str | None = None) -> bool:
        """Deactivate and, once confirmed, close and archive the session."""

        result = self._controller.deactivate()
        if not result.success:
            self._record(
                "provisioning_stop_failed",
                f"Unable to stop provisioning: {result.error}.",
                level="error",
                metadata={"step": result.step},
            )
            return False
        self.close_session(outcome, connected_ssid)
        return True

    def close_session(self, outcome: SessionOutcome, connected_ssid: str | None = None) -> None:
        session = self._session
        self._session = None
        if session is None or not session.close(outcome, connected_ssid):
            return
        self._record(
            "session_closed",
            f"Provisioning session closed ({session.outcome.value if session.outcome else '-'}).",
            metadata=session.to_dict(),
        )

    def _record(
        self,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._system_log is None:
            logger.info("%s: %s", event, message)
            return
        self._system_log.record("provisioning", event, message, level=level, metadata=metadata)


__all__ = [
    "ProvisioningService",
    "ProvisioningSession",
    "SessionOutcome",
    "default_ssid",
]
