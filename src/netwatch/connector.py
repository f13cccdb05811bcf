"""Upstream WiFi connection attempts and network scanning."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .errors import ConnectorError
from .prober import WIFI, classify_interface

logger = logging.getLogger(__name__)

_BSS_RE = re.compile(r"^BSS\s+[0-9a-fA-F:]{17}")
_HEX_ESCAPE_RE = re.compile(r"\\x([0-9a-fA-F]{2})")

IN_PROGRESS_DETAIL = "connection attempt already in progress"


@dataclass(slots=True)
class WiFiNetwork:
    """A network seen by ``iw`` during a scan."""

    ssid: str
    signal: float | None = None
    encrypted: bool = False

    def to_dict(self) -> dict[str, object | None]:
        return {"ssid": self.ssid, "signal": self.signal, "encrypted": self.encrypted}


@dataclass(frozen=True, slots=True)
class ConnectOutcome:
    """Result of a single upstream connection attempt."""

    success: bool
    ssid: str
    error_detail: str | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {"success": self.success, "ssid": self.ssid, "error_detail": self.error_detail}


def validate_credentials(ssid: str, credential: str | None) -> str | None:
    """Return a problem description, or ``None`` when the values are acceptable."""

    if not isinstance(ssid, str) or not 1 <= len(ssid) <= 32 or not ssid.strip():
        return "SSID must be 1-32 characters"
    if credential is not None and credential != "" and not 8 <= len(credential) <= 63:
        return "Password must be 8-63 characters"
    return None


def _decode_ssid(raw: str) -> str:
    return _HEX_ESCAPE_RE.sub(lambda match: chr(int(match.group(1), 16)), raw)


def parse_iw_scan(output: str) -> list[WiFiNetwork]:
    """Parse ``iw dev <if> scan`` output.

    Hidden networks are dropped. Duplicate SSIDs keep their strongest entry
    and the result is ordered strongest first.
    """

    networks: dict[str, WiFiNetwork] = {}
    current: WiFiNetwork | None = None

    def _commit(network: WiFiNetwork | None) -> None:
        if network is None or not network.ssid:
            return
        existing = networks.get(network.ssid)
        if existing is None or _strength(network) > _strength(existing):
            networks[network.ssid] = network

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if _BSS_RE.match(line):
            _commit(current)
            current = WiFiNetwork(ssid="")
            continue
        if current is None:
            continue
        if line.startswith("signal:"):
            try:
                current.signal = float(line.split(":", 1)[1].split()[0])
            except (IndexError, ValueError):
                current.signal = None
        elif line.startswith("SSID:"):
            current.ssid = _decode_ssid(line.split(":", 1)[1].strip())
        elif line.startswith("capability:") and "Privacy" in line:
            current.encrypted = True
        elif line.startswith(("RSN:", "WPA:")):
            current.encrypted = True
    _commit(current)
    return sorted(networks.values(), key=_strength, reverse=True)


def _strength(network: WiFiNetwork) -> float:
    return network.signal if network.signal is not None else float("-inf")


class UpstreamConnector:
    """Joins an upstream WiFi network with NetworkManager, one attempt at a time."""

    def __init__(
        self,
        interface: str | None = None,
        *,
        scan_timeout: float = 20.0,
        sysfs_root: Path = Path("/sys/class/net"),
    ) -> None:
        self._interface = interface
        self._scan_timeout = scan_timeout
        self._sysfs_root = sysfs_root
        self._attempt_lock = threading.Lock()

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str], *, timeout: float) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except FileNotFoundError as exc:
            raise ConnectorError(f"{args[0]} command unavailable") from exc
        except subprocess.TimeoutExpired as exc:
            raise ConnectorError(f"{args[0]} timed out after {timeout:g}s") from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise ConnectorError(error_output) from exc
        return completed.stdout

    def _get_interface(self) -> str:
        if self._interface:
            return self._interface
        try:
            names = sorted(entry.name for entry in self._sysfs_root.iterdir())
        except OSError as exc:
            raise ConnectorError(f"Unable to list network interfaces: {exc}") from exc
        for name in names:
            if classify_interface(name, sysfs_root=self._sysfs_root) == WIFI:
                return name
        raise ConnectorError("No WiFi interface detected")

    # ------------------------------ operations -----------------------------
    @property
    def busy(self) -> bool:
        return self._attempt_lock.locked()

    def connect(self, ssid: str, credential: str | None, timeout: float = 45.0) -> ConnectOutcome:
        """Make exactly one attempt to join ``ssid``; failures are returned, not raised."""

        problem = validate_credentials(ssid, credential)
        if problem is not None:
            return ConnectOutcome(False, ssid, problem)
        if not self._attempt_lock.acquire(blocking=False):
            return ConnectOutcome(False, ssid, IN_PROGRESS_DETAIL)
        try:
            wait = max(1, int(round(timeout)))
            try:
                interface = self._get_interface()
                args = ["nmcli", "--wait", str(wait), "device", "wifi", "connect", ssid]
                if credential:
                    args.extend(["password", credential])
                args.extend(["ifname", interface])
                self._run(args, timeout=wait + 5.0)
            except ConnectorError as exc:
                logger.warning("Connection to %s failed: %s", ssid, exc)
                return ConnectOutcome(False, ssid, str(exc))
            logger.info("Connected to upstream network %s", ssid)
            return ConnectOutcome(True, ssid)
        finally:
            self._attempt_lock.release()

    def scan(self) -> list[WiFiNetwork]:
        """Return visible networks, raising :class:`ConnectorError` on tool failure."""

        interface = self._get_interface()
        output = self._run(["iw", "dev", interface, "scan"], timeout=self._scan_timeout)
        return parse_iw_scan(output)


__all__ = [
    "ConnectOutcome",
    "IN_PROGRESS_DETAIL",
    "UpstreamConnector",
    "WiFiNetwork",
    "parse_iw_scan",
    "validate_credentials",
]
