"""Provisioning access point control with full rollback on failure."""

from __future__ import annotations

import enum
import ipaddress
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Protocol, Sequence

import httpx

from .errors import APError
from .system_log import SystemLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class APConfig:
    """Everything needed to bring up one provisioning access point."""

    interface: str
    ssid: str
    channel: int = 6
    subnet: str = "192.168.4.0/24"
    gateway: str | None = None
    dhcp_start: str | None = None
    dhcp_end: str | None = None
    portal_port: int = 80
    passphrase: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.interface, str) or not self.interface.strip():
            raise ValueError("Access point interface must be a non-empty string")
        object.__setattr__(self, "interface", self.interface.strip())
        cleaned_ssid = self.ssid.strip() if isinstance(self.ssid, str) else ""
        if not 1 <= len(cleaned_ssid.encode("utf-8")) <= 32:
            raise ValueError("Access point SSID must be 1-32 bytes")
        object.__setattr__(self, "ssid", cleaned_ssid)
        if not 1 <= int(self.channel) <= 14:
            raise ValueError("Access point channel must be between 1 and 14")
        network = ipaddress.IPv4Network(self.subnet, strict=True)
        hosts = network.num_addresses - 2
        if hosts < 50:
            raise ValueError("Access point subnet is too small")
        gateway = ipaddress.IPv4Address(self.gateway) if self.gateway else network.network_address + 1
        start = ipaddress.IPv4Address(self.dhcp_start) if self.dhcp_start else network.network_address + 10
        end = ipaddress.IPv4Address(self.dhcp_end) if self.dhcp_end else network.network_address + 50
        for label, address in (("gateway", gateway), ("DHCP start", start), ("DHCP end", end)):
            if address not in network or address in (network.network_address, network.broadcast_address):
                raise ValueError(f"Access point {label} {address} is outside {network}")
        if start > end:
            raise ValueError("DHCP range start must not exceed its end")
        if start <= gateway <= end:
            raise ValueError("Gateway address must not fall inside the DHCP range")
        if not 1 <= int(self.portal_port) <= 65535:
            raise ValueError("Portal port must be a valid TCP port")
        if self.passphrase is not None and not 8 <= len(self.passphrase) <= 63:
            raise ValueError("Access point passphrase must be 8-63 characters")
        object.__setattr__(self, "subnet", str(network))
        object.__setattr__(self, "gateway", str(gateway))
        object.__setattr__(self, "dhcp_start", str(start))
        object.__setattr__(self, "dhcp_end", str(end))

    @property
    def prefixlen(self) -> int:
        return ipaddress.IPv4Network(self.subnet).prefixlen

    @property
    def netmask(self) -> str:
        return str(ipaddress.IPv4Network(self.subnet).netmask)

    @property
    def portal_url(self) -> str:
        return f"http://{self.gateway}:{self.portal_port}"

    def to_dict(self) -> dict[str, object | None]:
        return {
            "interface": self.interface,
            "ssid": self.ssid,
            "channel": self.channel,
            "subnet": self.subnet,
            "gateway": self.gateway,
            "dhcp_start": self.dhcp_start,
            "dhcp_end": self.dhcp_end,
            "portal_port": self.portal_port,
            "secured": self.passphrase is not None,
        }


class APState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass(slots=True)
class APResult:
    """Outcome of an access point lifecycle operation."""

    success: bool
    state: APState
    error: str | None = None
    step: str | None = None

    def to_dict(self) -> dict[str, object | None]:
        return {
            "success": self.success,
            "state": self.state.value,
            "error": self.error,
            "step": self.step,
        }


def render_hostapd_config(config: APConfig) -> str:
    lines = [
        f"interface={config.interface}",
        "driver=nl80211",
        f"ssid={config.ssid}",
        "hw_mode=g",
        f"channel={config.channel}",
        "wmm_enabled=0",
        "macaddr_acl=0",
        "auth_algs=1",
        "ignore_broadcast_ssid=0",
    ]
    if config.passphrase:
        lines.extend(
            [
                "wpa=2",
                "wpa_key_mgmt=WPA-PSK",
                "rsn_pairwise=CCMP",
                f"wpa_passphrase={config.passphrase}",
            ]
        )
    else:
        lines.append("wpa=0")
    return "\n".join(lines) + "\n"


def render_dnsmasq_config(config: APConfig) -> str:
    # Every name resolves to the gateway so clients land on the portal.
    lines = [
        f"interface={config.interface}",
        "bind-interfaces",
        "no-resolv",
        "domain-needed",
        "bogus-priv",
        f"dhcp-range={config.dhcp_start},{config.dhcp_end},{config.netmask},24h",
        f"dhcp-option=option:router,{config.gateway}",
        f"dhcp-option=option:dns-server,{config.gateway}",
        f"address=/#/{config.gateway}",
    ]
    return "\n".join(lines) + "\n"


class APDriver:
    """Abstract interface for the system-level access point steps."""

    def release_interface(self, interface: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def reclaim_interface(self, interface: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def assign_address(self, config: APConfig) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def flush_address(self, interface: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def start_beacon(self, config: APConfig) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop_beacon(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def start_dhcp(self, config: APConfig) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def stop_dhcp(self) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def cleanup_stale(self, interface: str | None) -> None:  # pragma: no cover - optional hook
        """Remove leftovers of an access point started by a previous process."""

        return None

    def health(self) -> dict[str, bool]:  # pragma: no cover - optional hook
        return {}


class PortalRunner(Protocol):
    """The captive portal web service as seen by the controller."""

    @property
    def running(self) -> bool: ...

    def start(self, host: str, port: int) -> None: ...

    def stop(self) -> None: ...


class HostapdDriver(APDriver):
    """Drive the access point with nmcli, ip, hostapd and dnsmasq."""

    def __init__(
        self,
        runtime_dir: Path | str = Path("/run/netwatch"),
        *,
        timeout: float = 15.0,
        startup_grace: float = 1.0,
        stop_timeout: float = 5.0,
    ) -> None:
        self._runtime_dir = Path(runtime_dir)
        self._timeout = timeout
        self._startup_grace = max(0.0, startup_grace)
        self._stop_timeout = stop_timeout
        self._processes: dict[str, subprocess.Popen[bytes]] = {}
        self._log_handles: dict[str, IO[bytes]] = {}

    # ------------------------------- helpers -------------------------------
    def _run(self, args: Sequence[str], *, step: str) -> str:
        try:
            completed = subprocess.run(
                list(args),
                check=True,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise APError(f"{args[0]} command unavailable", step=step) from exc
        except subprocess.TimeoutExpired as exc:
            raise APError(f"{args[0]} command timed out", step=step) from exc
        except subprocess.CalledProcessError as exc:
            error_output = (exc.stderr or "").strip() or (exc.stdout or "").strip() or str(exc)
            raise APError(error_output, step=step) from exc
        return completed.stdout

    def _pid_path(self, name: str) -> Path:
        return self._runtime_dir / f"{name}.pid"

    def _spawn(self, name: str, args: list[str], *, step: str) -> None:
        if name in self._processes and self._processes[name].poll() is None:
            return
        log_path = self._runtime_dir / f"{name}.log"
        try:
            self._runtime_dir.mkdir(parents=True, exist_ok=True)
            handle = log_path.open("wb")
        except OSError as exc:
            raise APError(f"Unable to open {name} log {log_path}: {exc}", step=step) from exc
        try:
            process = subprocess.Popen(args, stdout=handle, stderr=subprocess.STDOUT)
        except OSError as exc:
            handle.close()
            raise APError(f"Unable to start {name}: {exc}", step=step) from exc
        if self._startup_grace:
            try:
                process.wait(timeout=self._startup_grace)
            except subprocess.TimeoutExpired:
                pass
        if process.poll() is not None:
            handle.close()
            tail = self._read_tail(log_path)
            raise APError(
                f"{name} exited with status {process.returncode}: {tail or 'no output'}",
                step=step,
            )
        self._processes[name] = process
        self._log_handles[name] = handle
        try:
            self._pid_path(name).write_text(str(process.pid), encoding="utf-8")
        except OSError as exc:
            self._terminate(name)
            raise APError(f"Unable to record {name} pid: {exc}", step=step) from exc
        logger.info("Started %s (pid %s)", name, process.pid)

    def _terminate(self, name: str) -> None:
        process = self._processes.pop(name, None)
        handle = self._log_handles.pop(name, None)
        try:
            if process is not None and process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self._stop_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning("%s did not exit after SIGTERM; killing", name)
                    process.kill()
                    process.wait(timeout=self._stop_timeout)
        finally:
            if handle is not None:
                handle.close()
            self._pid_path(name).unlink(missing_ok=True)

    @staticmethod
    def _read_tail(path: Path, limit: int = 400) -> str:
        try:
            data = path.read_bytes()
        except OSError:
            return ""
        return data[-limit:].decode("utf-8", errors="replace").strip()

    def _write_config(self, name: str, content: str, *, step: str) -> Path:
        path = self._runtime_dir / name
        try:
            self._runtime_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise APError(f"Unable to write {path}: {exc}", step=step) from exc
        return path

    # ---------------------------- interface impl ---------------------------
    def release_interface(self, interface: str) -> None:
        self._run(["nmcli", "device", "set", interface, "managed", "no"], step="release_interface")

    def reclaim_interface(self, interface: str) -> None:
        self._run(["nmcli", "device", "set", interface, "managed", "yes"], step="reclaim_interface")

    def assign_address(self, config: APConfig) -> None:
        self._run(["ip", "link", "set", config.interface, "up"], step="assign_address")
        self._run(["ip", "addr", "flush", "dev", config.interface], step="assign_address")
        self._run(
            ["ip", "addr", "add", f"{config.gateway}/{config.prefixlen}", "dev", config.interface],
            step="assign_address",
        )

    def flush_address(self, interface: str) -> None:
        self._run(["ip", "addr", "flush", "dev", interface], step="flush_address")

    def start_beacon(self, config: APConfig) -> None:
        path = self._write_config("hostapd.conf", render_hostapd_config(config), step="start_beacon")
        self._spawn("hostapd", ["hostapd", str(path)], step="start_beacon")

    def stop_beacon(self) -> None:
        self._terminate("hostapd")

    def start_dhcp(self, config: APConfig) -> None:
        path = self._write_config("dnsmasq.conf", render_dnsmasq_config(config), step="start_dhcp")
        self._spawn(
            "dnsmasq",
            ["dnsmasq", f"--conf-file={path}", "--no-daemon", "--keep-in-foreground"],
            step="start_dhcp",
        )

    def stop_dhcp(self) -> None:
        self._terminate("dnsmasq")

    def cleanup_stale(self, interface: str | None) -> None:
        found = False
        for name in ("dnsmasq", "hostapd"):
            pid_path = self._pid_path(name)
            if not pid_path.exists():
                continue
            found = True
            try:
                pid = int(pid_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                pid = None
            if pid is not None:
                try:
                    os.kill(pid, signal.SIGTERM)
                    logger.info("Stopped stale %s process %s", name, pid)
                except ProcessLookupError:
                    pass
                except PermissionError as exc:
                    logger.warning("Unable to stop stale %s process %s: %s", name, pid, exc)
            pid_path.unlink(missing_ok=True)
        if found and interface:
            for action in (self.flush_address, self.reclaim_interface):
                try:
                    action(interface)
                except APError as exc:
                    logger.warning("Stale access point cleanup step failed: %s", exc)

    def health(self) -> dict[str, bool]:
        return {
            name: name in self._processes and self._processes[name].poll() is None
            for name in ("hostapd", "dnsmasq")
        }


@dataclass(slots=True)
class _Step:
    name: str
    undo: Callable[[], None]


class _Cancelled(Exception):
    pass


class APController:
    """Idempotent running/stopped resource wrapping an :class:`APDriver`.

    Activation runs its steps in order and records each completed step with
    its undo action. Any failure, a failed verification or a cancellation
    unwinds the completed steps in reverse. Deactivation runs the recorded
    undo actions; a failing undo leaves the remaining steps recorded so the
    next attempt resumes where this one stopped.
    """

    def __init__(
        self,
        driver: APDriver,
        portal: PortalRunner | None = None,
        *,
        verify_timeout: float = 10.0,
        verify_interval: float = 0.25,
        verify_path: str = "/api/health",
        http_get: Callable[..., httpx.Response] | None = None,
        system_log: SystemLog | None = None,
    ) -> None:
        self._driver = driver
        self._portal = portal
        self._verify_timeout = max(0.0, verify_timeout)
        self._verify_interval = max(0.01, verify_interval)
        self._verify_path = verify_path
        self._http_get = http_get or httpx.get
        self._system_log = system_log
        self._lock = threading.Lock()
        self._state = APState.STOPPED
        self._config: APConfig | None = None
        self._completed: list[_Step] = []
        self._teardown_pending = False
        self._step_name: str | None = None
        self.cancel_event = threading.Event()

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> APState:
        return self._state

    @property
    def config(self) -> APConfig | None:
        return self._config

    def is_active(self) -> bool:
        return self._state is not APState.STOPPED

    # ------------------------------ operations -----------------------------
    def activate(self, config: APConfig) -> APResult:
        with self._lock:
            if self._teardown_pending:
                return APResult(
                    False,
                    self._state,
                    error="Previous access point teardown has not completed",
                    step=self._completed[-1].name if self._completed else None,
                )
            if self._state is APState.RUNNING:
                if config == self._config:
                    return APResult(True, self._state)
                return APResult(
                    False,
                    self._state,
                    error="Access point already running with a different configuration",
                )
            self._state = APState.STARTING
            self._config = config
            self._record("ap_activate_attempt", f"Activating access point {config.ssid}.", metadata=config.to_dict())
            try:
                self._run_activation(config)
            except _Cancelled:
                self._rollback()
                self._record("ap_activate_cancelled", "Access point activation cancelled.", level="warning")
                return APResult(False, self._state, error="Activation cancelled", step="cancelled")
            except APError as exc:
                return self._fail_activation(exc.step or self._step_name or "unknown", str(exc))
            except Exception as exc:
                step = self._step_name or "unknown"
                logger.exception("Unexpected error during access point step %s", step)
                return self._fail_activation(step, str(exc) or exc.__class__.__name__)
            self._state = APState.RUNNING
            self._record("ap_activated", f"Access point {config.ssid} running on {config.interface}.")
            return APResult(True, self._state)

    def deactivate(self) -> APResult:
        with self._lock:
            if self._state is APState.STOPPED and not self._completed:
                return APResult(True, self._state)
            self._state = APState.STOPPING
            self._record("ap_deactivate_attempt", "Deactivating access point.")
            while self._completed:
                step = self._completed[-1]
                try:
                    step.undo()
                except Exception as exc:
                    self._state = APState.RUNNING
                    self._teardown_pending = True
                    self._record(
                        "ap_deactivate_error",
                        f"Access point teardown failed during {step.name}: {exc}.",
                        level="error",
                        metadata={"step": step.name, "remaining": [item.name for item in self._completed]},
                    )
                    return APResult(False, self._state, error=str(exc), step=step.name)
                self._completed.pop()
            self._state = APState.STOPPED
            self._teardown_pending = False
            self._config = None
            self._record("ap_deactivated", "Access point stopped and interface returned.")
            return APResult(True, self._state)

    def cancel(self) -> None:
        """Interrupt an in-progress activation at the next step boundary."""

        self.cancel_event.set()

    def reset_cancel(self) -> None:
        self.cancel_event.clear()

    def cleanup_stale(self, interface: str | None) -> None:
        """Best-effort removal of an access point left by a previous run."""

        if self.is_active():
            return
        try:
            self._driver.cleanup_stale(interface)
        except APError as exc:
            logger.warning("Stale access point cleanup failed: %s", exc)

    def health(self) -> dict[str, object]:
        processes = self._driver.health() if self._state is APState.RUNNING else {}
        portal_running = bool(self._portal.running) if self._portal is not None else None
        healthy = self._state is APState.RUNNING and all(processes.values())
        if self._portal is not None and self._state is APState.RUNNING:
            healthy = healthy and bool(portal_running)
        return {
            "state": self._state.value,
            "processes": processes,
            "portal_running": portal_running,
            "healthy": healthy,
        }

    # ----------------------------- implementation --------------------------
    def _checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise _Cancelled()

    def _begin(self, step: str) -> None:
        self._checkpoint()
        self._step_name = step

    def _fail_activation(self, step: str, error: str) -> APResult:
        self._rollback()
        self._record(
            "ap_activate_error",
            f"Access point activation failed during {step}: {error}.",
            level="error",
            metadata={"step": step},
        )
        return APResult(False, self._state, error=error, step=step)

    def _run_activation(self, config: APConfig) -> None:
        self._step_name = None
        driver = self._driver
        interface = config.interface

        self._begin("release_interface")
        driver.release_interface(interface)
        self._completed.append(_Step("release_interface", lambda: driver.reclaim_interface(interface)))

        self._begin("assign_address")
        self._completed.append(_Step("assign_address", lambda: driver.flush_address(interface)))
        driver.assign_address(config)

        self._begin("start_beacon")
        driver.start_beacon(config)
        self._completed.append(_Step("start_beacon", driver.stop_beacon))

        self._begin("start_dhcp")
        driver.start_dhcp(config)
        self._completed.append(_Step("start_dhcp", driver.stop_dhcp))

        if self._portal is not None:
            portal = self._portal
            self._begin("start_portal")
            try:
                portal.start(config.gateway or "0.0.0.0", config.portal_port)
            except (OSError, RuntimeError) as exc:
                # The portal may have half-started; stopping it is idempotent.
                self._completed.append(_Step("start_portal", self._stop_portal))
                raise APError(f"Captive portal failed to start: {exc}", step="start_portal") from exc
            self._completed.append(_Step("start_portal", self._stop_portal))
            self._begin("verify")
            self._verify(config)

    def _stop_portal(self) -> None:
        if self._portal is None:
            return
        try:
            self._portal.stop()
        except (OSError, RuntimeError) as exc:
            raise APError(f"Captive portal failed to stop: {exc}", step="start_portal") from exc

    def _verify(self, config: APConfig) -> None:
        url = config.portal_url + self._verify_path
        deadline = time.monotonic() + self._verify_timeout
        last_error = "no response"
        while True:
            self._checkpoint()
            remaining = deadline - time.monotonic()
            try:
                response = self._http_get(url, timeout=max(0.1, min(2.0, remaining)))
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
            else:
                if response.status_code == 200:
                    return
                last_error = f"HTTP {response.status_code}"
            if time.monotonic() >= deadline:
                raise APError(
                    f"Portal at {url} not reachable within {self._verify_timeout:g}s: {last_error}",
                    step="verify",
                )
            if self.cancel_event.wait(self._verify_interval):
                raise _Cancelled()

    def _rollback(self) -> None:
        while self._completed:
            step = self._completed.pop()
            try:
                step.undo()
            except Exception as exc:
                logger.error("Rollback step %s failed: %s", step.name, exc)
        self._state = APState.STOPPED
        self._config = None

    def _record(
        self,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, object | None] | None = None,
    ) -> None:
        if self._system_log is None:
            logger.log(getattr(logging, level.upper(), logging.INFO), "%s: %s", event, message)
            return
        self._system_log.record("ap", event, message, level=level, state=self._state.value, metadata=metadata)


__all__ = [
    "APConfig",
    "APController",
    "APDriver",
    "APResult",
    "APState",
    "HostapdDriver",
    "PortalRunner",
    "render_dnsmasq_config",
    "render_hostapd_config",
]
