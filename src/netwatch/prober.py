"""Link probing: interface state and external reachability."""

from __future__ import annotations

import logging
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence

from .config import DEFAULT_PING_TARGET
from .errors import ProbeError

WIRED = "wired"
WIFI = "wifi"
INTERFACE_CLASSES = (WIRED, WIFI)

_WIRED_PREFIXES = ("eth", "en")
_WIFI_PREFIXES = ("wl",)
_LINK_RE = re.compile(r"^\d+:\s+(?P<name>[^:@\s]+)(?:@\S+)?:\s+<(?P<flags>[^>]*)>")
_INET_RE = re.compile(r"\binet\s+(?P<address>\d+\.\d+\.\d+\.\d+)(?:/\d+)?")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class InterfaceInfo:
    """An interface as listed by ``ip -o link show``."""

    name: str
    admin_up: bool
    has_carrier: bool


@dataclass(frozen=True, slots=True)
class LinkObservation:
    """Result of probing one class of interfaces during a single cycle."""

    interface_class: str
    interface: str | None = None
    has_carrier: bool = False
    address: str | None = None
    reachable: bool = False
    observed_at: float = field(default_factory=time.time)

    @property
    def usable(self) -> bool:
        return self.interface is not None and self.address is not None and self.reachable

    def to_dict(self) -> dict[str, object | None]:
        return {
            "interface_class": self.interface_class,
            "interface": self.interface,
            "has_carrier": self.has_carrier,
            "address": self.address,
            "reachable": self.reachable,
            "usable": self.usable,
            "observed_at": self.observed_at,
        }


def classify_interface(name: str, *, sysfs_root: Path = Path("/sys/class/net")) -> str | None:
    """Return ``"wired"``, ``"wifi"`` or ``None`` for an interface name."""

    if not name or name == "lo":
        return None
    if name.startswith(_WIFI_PREFIXES) or (sysfs_root / name / "wireless").is_dir():
        return WIFI
    if name.startswith(_WIRED_PREFIXES):
        return WIRED
    return None


def parse_link_listing(output: str) -> list[InterfaceInfo]:
    """Parse the one-line-per-interface output of ``ip -o link show``."""

    interfaces: list[InterfaceInfo] = []
    for line in output.splitlines():
        match = _LINK_RE.match(line.strip())
        if not match:
            continue
        flags = {flag.strip() for flag in match.group("flags").split(",")}
        interfaces.append(
            InterfaceInfo(
                name=match.group("name"),
                admin_up="UP" in flags,
                has_carrier="LOWER_UP" in flags,
            )
        )
    return interfaces


def parse_ipv4_address(output: str) -> str | None:
    match = _INET_RE.search(output)
    return match.group("address") if match else None


class LinkProber:
    """Reports whether an interface class currently provides connectivity."""

    def __init__(
        self,
        *,
        ping_target: str = DEFAULT_PING_TARGET,
        ping_timeout: float = 5.0,
        command_timeout: float = 15.0,
        sysfs_root: Path = Path("/sys/class/net"),
        runner: Callable[..., subprocess.CompletedProcess[str]] | None = None,
    ) -> None:
        self._ping_target = ping_target
        self._ping_timeout = max(1.0, ping_timeout)
        self._command_timeout = command_timeout
        self._sysfs_root = sysfs_root
        self._runner = runner or subprocess.run

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        return self._runner(
            list(args),
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout or self._command_timeout,
        )

    def _enumerate(self) -> list[InterfaceInfo]:
        try:
            completed = self._run(["ip", "-o", "link", "show"])
        except FileNotFoundError as exc:
            raise ProbeError("ip command unavailable") from exc
        except subprocess.TimeoutExpired as exc:
            raise ProbeError("interface enumeration timed out") from exc
        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            raise ProbeError(f"interface enumeration failed: {detail or completed.returncode}")
        return parse_link_listing(completed.stdout)

    def _address_of(self, interface: str) -> str | None:
        completed = self._run(["ip", "-o", "-4", "addr", "show", "dev", interface])
        if completed.returncode != 0:
            return None
        return parse_ipv4_address(completed.stdout)

    def _reaches_target(self, interface: str) -> bool:
        wait = str(int(round(self._ping_timeout)))
        completed = self._run(
            ["ping", "-c", "1", "-W", wait, "-I", interface, self._ping_target],
            timeout=self._ping_timeout + 5.0,
        )
        return completed.returncode == 0

    # ------------------------------ operations -----------------------------
    def list_interfaces(self, interface_class: str) -> list[InterfaceInfo]:
        """Return every interface of the class regardless of its state."""

        if interface_class not in INTERFACE_CLASSES:
            raise ValueError(f"Unknown interface class {interface_class!r}")
        return [
            info
            for info in self._enumerate()
            if classify_interface(info.name, sysfs_root=self._sysfs_root) == interface_class
        ]

    def probe(self, interface_class: str) -> LinkObservation:
        """Return the first usable interface of the class, or a negative observation.

        Only the enumeration failing raises :class:`ProbeError`. A candidate
        whose address or ping check cannot run is skipped.
        """

        candidates = [info for info in self.list_interfaces(interface_class) if info.admin_up]
        best = LinkObservation(interface_class=interface_class)
        for info in candidates:
            try:
                address = self._address_of(info.name)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("Address lookup for %s failed: %s", info.name, exc)
                continue
            if address is None:
                logger.debug("Interface %s has no IPv4 address", info.name)
                if best.interface is None:
                    best = LinkObservation(
                        interface_class=interface_class,
                        interface=info.name,
                        has_carrier=info.has_carrier,
                    )
                continue
            try:
                reachable = self._reaches_target(info.name)
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning("Reachability check via %s failed: %s", info.name, exc)
                reachable = False
            observation = LinkObservation(
                interface_class=interface_class,
                interface=info.name,
                has_carrier=info.has_carrier,
                address=address,
                reachable=reachable,
            )
            if reachable:
                logger.debug("Interface %s (%s) reaches %s", info.name, address, self._ping_target)
                return observation
            logger.info("Interface %s has address %s but no connectivity", info.name, address)
            best = observation
        return best


__all__ = [
    "INTERFACE_CLASSES",
    "WIFI",
    "WIRED",
    "InterfaceInfo",
    "LinkObservation",
    "LinkProber",
    "classify_interface",
    "parse_ipv4_address",
    "parse_link_listing",
]
