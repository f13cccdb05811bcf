"""Network state and its persisted status record."""

from __future__ import annotations

import enum
import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path

logger = logging.getLogger(__name__)


class NetworkState(str, enum.Enum):
    ETHERNET_CONNECTED = "ethernet-connected"
    WIFI_CONNECTED = "wifi-connected"
    PROVISIONING_ACTIVE = "provisioning-active"
    DISCONNECTED = "disconnected"

    @property
    def connected(self) -> bool:
        return self in (NetworkState.ETHERNET_CONNECTED, NetworkState.WIFI_CONNECTED)


@dataclass(frozen=True, slots=True)
class StatusRecord:
    """Last confirmed supervisor state, as seen by external readers."""

    state: NetworkState = NetworkState.DISCONNECTED
    active_interface: str | None = None
    last_transition_time: float = field(default_factory=time.time)
    last_observation_time: float | None = None
    degraded: bool = False
    consecutive_failures: int = 0
    session_id: str | None = None
    last_connect_ssid: str | None = None
    last_connect_result: str | None = None
    last_connect_error: str | None = None
    last_connect_time: float | None = None
    updated_at: float = field(default_factory=time.time)

    def evolve(self, **changes: object) -> "StatusRecord":
        changes.setdefault("updated_at", time.time())
        return replace(self, **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object | None]:
        return {
            "state": self.state.value,
            "active_interface": self.active_interface,
            "last_transition_time": self.last_transition_time,
            "last_observation_time": self.last_observation_time,
            "degraded": self.degraded,
            "consecutive_failures": self.consecutive_failures,
            "session_id": self.session_id,
            "last_connect_ssid": self.last_connect_ssid,
            "last_connect_result": self.last_connect_result,
            "last_connect_error": self.last_connect_error,
            "last_connect_time": self.last_connect_time,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: object) -> "StatusRecord":
        if not isinstance(payload, dict):
            raise ValueError("Status record must be a JSON object")
        try:
            state = NetworkState(payload.get("state"))
        except ValueError as exc:
            raise ValueError(f"Unknown network state {payload.get('state')!r}") from exc
        interface = payload.get("active_interface")
        session_id = payload.get("session_id")
        observed = payload.get("last_observation_time")
        connect_time = payload.get("last_connect_time")
        return cls(
            state=state,
            active_interface=interface if isinstance(interface, str) else None,
            last_transition_time=float(payload.get("last_transition_time") or 0.0),
            last_observation_time=float(observed) if observed is not None else None,
            degraded=bool(payload.get("degraded", False)),
            consecutive_failures=int(payload.get("consecutive_failures") or 0),
            session_id=session_id if isinstance(session_id, str) else None,
            last_connect_ssid=_optional_str(payload.get("last_connect_ssid")),
            last_connect_result=_optional_str(payload.get("last_connect_result")),
            last_connect_error=_optional_str(payload.get("last_connect_error")),
            last_connect_time=float(connect_time) if connect_time is not None else None,
            updated_at=float(payload.get("updated_at") or 0.0),
        )


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


class StatusStore:
    """Holds the current :class:`StatusRecord` and mirrors it to disk.

    Writes go through a temporary file in the same directory followed by
    :func:`os.replace`, so readers never observe a partial record.
    """

    def __init__(self, path: Path | str | None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._record = StatusRecord()

    @property
    def path(self) -> Path | None:
        return self._path

    def current(self) -> StatusRecord:
        with self._lock:
            return self._record

    def write(self, record: StatusRecord) -> None:
        with self._lock:
            self._record = record
            if self._path is None:
                return
            try:
                self._persist(record)
            except OSError as exc:
                logger.error("Unable to write status record to %s: %s", self._path, exc)

    def _persist(self, record: StatusRecord) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".status-", suffix=".tmp", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2, sort_keys=True)
                handle.write("\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


def read_status(path: Path | str) -> StatusRecord | None:
    """Read a persisted record; ``None`` when missing or unreadable."""

    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return StatusRecord.from_dict(payload)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, TypeError) as exc:
        logger.warning("Unable to read status record %s: %s", path, exc)
        return None


__all__ = ["NetworkState", "StatusRecord", "StatusStore", "read_status"]
