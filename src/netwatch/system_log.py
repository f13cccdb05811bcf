"""Persistent structured event log shared by the netwatch components."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque, Iterable

LEVELS = ("debug", "info", "warning", "error")

_LOGGING_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(slots=True)
class SystemLogEntry:
    """A single event captured for troubleshooting."""

    timestamp: float
    category: str
    event: str
    message: str
    level: str = "info"
    state: str | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
            "level": self.level,
        }
        if self.state is not None:
            payload["state"] = self.state
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class SystemLog:
    """Append-only JSON lines log with a bounded in-memory tail.

    Every recorded entry is mirrored to the standard :mod:`logging` module so
    journald picks it up as well. The backing file is compacted back down to
    the in-memory tail once it grows past ``compact_after`` lines.
    """

    def __init__(
        self,
        path: Path | str | None = Path("/var/lib/netwatch/events.jsonl"),
        *,
        max_entries: int = 500,
        compact_after: int | None = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._compact_after = compact_after if compact_after is not None else max_entries * 4
        self._file_lines = 0
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logging.getLogger(__name__).warning(
                    "Unable to prepare event log directory: %s", exc
                )
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    # ------------------------------ operations -----------------------------
    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        level: str = "info",
        state: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append an event, mirror it to the logger and return the entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        if not cleaned_category:
            cleaned_category = "system"
        cleaned_level = level if level in LEVELS else "info"
        entry = SystemLogEntry(
            timestamp=time.time(),
            category=cleaned_category,
            event=event,
            message=message,
            level=cleaned_level,
            state=state,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        logger = logging.getLogger(f"{__name__}.{cleaned_category}")
        if entry.metadata:
            logger.log(
                _LOGGING_LEVELS[cleaned_level],
                "[%s] %s: %s | metadata=%s",
                state or "-",
                event,
                message,
                entry.metadata,
            )
        else:
            logger.log(_LOGGING_LEVELS[cleaned_level], "[%s] %s: %s", state or "-", event, message)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
        event: str | None = None,
    ) -> list[SystemLogEntry]:
        """Return the most recent entries, optionally filtered."""

        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        if category is not None and category.strip():
            wanted = category.strip()
            entries = [entry for entry in entries if entry.category == wanted]
        if event is not None and event.strip():
            wanted_event = event.strip()
            entries = [entry for entry in entries if entry.event == wanted_event]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            if len(entries) > limit_value:
                entries = entries[-limit_value:]
        return entries

    # ----------------------------- implementation --------------------------
    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                lines = handle.readlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Unable to load event log: %s", exc)
            return
        self._file_lines = len(lines)
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._deserialize(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _deserialize(payload: object) -> SystemLogEntry | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        category = payload.get("category")
        cleaned_category = category.strip() if isinstance(category, str) and category.strip() else "system"
        try:
            timestamp = float(payload.get("timestamp"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            timestamp = time.time()
        level = payload.get("level")
        state = payload.get("state")
        metadata = payload.get("metadata")
        return SystemLogEntry(
            timestamp=timestamp,
            category=cleaned_category,
            event=event,
            message=message,
            level=level if level in LEVELS else "info",
            state=state if isinstance(state, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            if self._file_lines >= self._compact_after:
                self._compact_locked()
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
            self._file_lines += 1
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Unable to persist event log: %s", exc)

    def _compact_locked(self) -> None:
        # The newest entry is already in the deque; it is written by the caller.
        if self._path is None:
            return
        retained = list(self._entries)[:-1]
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            for item in retained:
                handle.write(json.dumps(item.to_dict(), separators=(",", ":")) + "\n")
        tmp_path.replace(self._path)
        self._file_lines = len(retained)

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned = {key: value for key, value in metadata.items() if value is not None}
        return cleaned or None


__all__ = ["LEVELS", "SystemLog", "SystemLogEntry"]
