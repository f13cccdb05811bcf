"""The network supervisor: poll loop, state machine and event queue."""

from __future__ import annotations

import logging
import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Union

from .ap import APController, HostapdDriver
from .config import NetwatchSettings, SupervisorSettings
from .connector import ConnectOutcome, UpstreamConnector
from .errors import ProbeError, SupervisorStartupError
from .prober import WIFI, WIRED, LinkObservation, LinkProber
from .provisioning import ProvisioningService, SessionOutcome
from .status import NetworkState, StatusRecord, StatusStore
from .system_log import SystemLog

logger = logging.getLogger(__name__)


# ------------------------------- events -------------------------------------
@dataclass(slots=True)
class ConnectRequest:
    """Operator supplied credentials waiting for the control loop."""

    ssid: str
    credential: str | None
    reply: Future = field(default_factory=Future)


@dataclass(frozen=True, slots=True)
class UpstreamConnected:
    """Out-of-band signal that the upstream WiFi link came up."""

    ssid: str | None = None


@dataclass(frozen=True, slots=True)
class Shutdown:
    pass


SupervisorEvent = Union[ConnectRequest, UpstreamConnected, Shutdown]


def decide_target(
    wired: LinkObservation | None,
    wifi: LinkObservation | None,
) -> tuple[NetworkState, str | None]:
    """Apply wired > wifi > provisioning precedence to one cycle's observations."""

    if wired is not None and wired.usable:
        return NetworkState.ETHERNET_CONNECTED, wired.interface
    if wifi is not None and wifi.usable:
        return NetworkState.WIFI_CONNECTED, wifi.interface
    return NetworkState.PROVISIONING_ACTIVE, None


def backoff_interval(settings: SupervisorSettings, failures: int) -> float:
    if failures < settings.max_consecutive_failures:
        return settings.poll_interval
    exponent = failures - settings.max_consecutive_failures + 1
    return min(settings.poll_interval * (2 ** exponent), settings.max_backoff_interval)


class NetworkSupervisor:
    """Single authority over the network state of the host.

    Only the control loop thread changes the state or writes the status
    record. Other threads talk to it through :meth:`submit_connect`,
    :meth:`notify_connected`, :meth:`request_stop` and :meth:`stop`, which
    enqueue events and wake the loop immediately.
    """

    def __init__(
        self,
        prober: LinkProber,
        provisioning: ProvisioningService,
        connector: UpstreamConnector,
        status_store: StatusStore,
        settings: SupervisorSettings | None = None,
        *,
        system_log: SystemLog | None = None,
        ap_interface: str | None = None,
    ) -> None:
        self._prober = prober
        self._provisioning = provisioning
        self._connector = connector
        self._status_store = status_store
        self._settings = settings or SupervisorSettings()
        self._system_log = system_log
        self._ap_interface = ap_interface
        self._events: "queue.SimpleQueue[SupervisorEvent]" = queue.SimpleQueue()
        self._inbox: list[SupervisorEvent] = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._state = NetworkState.DISCONNECTED
        self._failures = 0
        self._degraded = False
        self._pending_target: NetworkState | None = None
        self._pending_count = 0
        self._status_store.write(StatusRecord())

    # ------------------------------ properties -----------------------------
    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def degraded(self) -> bool:
        return self._degraded

    def status(self) -> StatusRecord:
        return self._status_store.current()

    def current_interval(self) -> float:
        return backoff_interval(self._settings, self._failures)

    def diagnostics(self) -> dict[str, object]:
        """Return the in-process view: status, failure tracking and AP health."""

        return {
            "status": self.status().to_dict(),
            "consecutive_failures": self._failures,
            "degraded": self._degraded,
            "poll_interval": self.current_interval(),
            "access_point": self._provisioning.controller.health(),
        }

    # ------------------------------ public API -----------------------------
    def submit_connect(self, ssid: str, credential: str | None) -> "Future[ConnectOutcome]":
        request = ConnectRequest(ssid=ssid, credential=credential)
        self._events.put(request)
        return request.reply

    def notify_connected(self, ssid: str | None = None) -> None:
        self._events.put(UpstreamConnected(ssid))

    def check_preconditions(self) -> str:
        """Return the wireless interface to provision on or raise."""

        try:
            interfaces = self._prober.list_interfaces(WIFI)
        except ProbeError as exc:
            raise SupervisorStartupError(f"Unable to enumerate network interfaces: {exc}") from exc
        names = [info.name for info in interfaces]
        if self._ap_interface:
            if self._ap_interface not in names:
                raise SupervisorStartupError(
                    f"Configured access point interface {self._ap_interface} is not a wireless interface"
                )
            return self._ap_interface
        if not names:
            raise SupervisorStartupError("No wireless interface available for provisioning")
        return names[0]

    def start(self) -> None:
        """Check preconditions and run the control loop on a background thread."""

        if self._thread and self._thread.is_alive():
            return
        self._prepare()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="netwatch-supervisor", daemon=True)
        self._thread.start()

    def run(self) -> None:
        """Run the control loop in the calling thread until :meth:`stop`."""

        self._prepare()
        self._stop_event.clear()
        self._run_loop()

    def request_stop(self) -> None:
        """Ask the control loop to finish; safe to call from a signal handler."""

        self._events.put(Shutdown())

    def stop(self, timeout: float | None = 30.0) -> None:
        self._stop_event.set()
        self._provisioning.controller.cancel()
        self._events.put(Shutdown())
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self._thread = None

    # ------------------------------ control loop ---------------------------
    def run_cycle(self) -> NetworkState:
        """Run one poll cycle and return the resulting state."""

        if self._drain_events() or self._stop_event.is_set():
            return self._state
        if self._state is NetworkState.PROVISIONING_ACTIVE:
            if self._expire_session() or self._repair_access_point():
                return self._state

        wired = self._safe_probe(WIRED)
        wifi = None
        if not wired.usable and self._state is not NetworkState.PROVISIONING_ACTIVE:
            wifi = self._safe_probe(WIFI)
        target, interface = decide_target(wired, wifi)

        if target is self._state:
            self._pending_target = None
            self._pending_count = 0
            self._write_status(last_observation_time=time.time())
            return self._state

        if not self._dwell_satisfied(target):
            self._write_status(last_observation_time=time.time())
            return self._state
        self._transition(target, interface)
        return self._state

    def _run_loop(self) -> None:
        self._record("supervisor_started", "Network supervisor started.")
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_cycle()
                except Exception:  # pragma: no cover - defensive logging
                    logger.exception("Supervisor cycle failed")
                if self._stop_event.is_set():
                    break
                self._sleep(self.current_interval())
        finally:
            self._shutdown()

    def _sleep(self, interval: float) -> None:
        try:
            event = self._events.get(timeout=interval)
        except queue.Empty:
            return
        self._inbox.append(event)

    def _prepare(self) -> None:
        interface = self.check_preconditions()
        self._ap_interface = interface
        self._provisioning.controller.cleanup_stale(interface)

    def _shutdown(self) -> None:
        controller = self._provisioning.controller
        controller.reset_cancel()
        if self._state is NetworkState.PROVISIONING_ACTIVE or controller.is_active():
            if self._provisioning.stop(SessionOutcome.ABORTED):
                self._commit(NetworkState.DISCONNECTED, None)
            else:
                logger.error("Access point could not be stopped during shutdown")
        self._fail_pending_requests("supervisor shutting down")
        self._record("supervisor_stopped", "Network supervisor stopped.")

    # -------------------------------- events -------------------------------
    def _drain_events(self) -> bool:
        """Handle queued events; return ``True`` when the state changed."""

        changed = False
        while True:
            if self._inbox:
                event = self._inbox.pop(0)
            else:
                try:
                    event = self._events.get_nowait()
                except queue.Empty:
                    break
            if isinstance(event, Shutdown):
                self._stop_event.set()
            elif isinstance(event, ConnectRequest):
                changed = self._handle_connect(event) or changed
            elif isinstance(event, UpstreamConnected):
                changed = self._handle_upstream_connected(event) or changed
        return changed

    def _handle_connect(self, request: ConnectRequest) -> bool:
        if not request.reply.set_running_or_notify_cancel():
            return False
        session = self._provisioning.session
        if self._stop_event.is_set():
            self._reply(request, ConnectOutcome(False, request.ssid, "supervisor shutting down"))
            return False
        if self._state is not NetworkState.PROVISIONING_ACTIVE or session is None:
            self._reply(request, ConnectOutcome(False, request.ssid, "provisioning is not active"))
            return False

        session.connect_attempts += 1
        self._record(
            "connect_requested",
            f"Connecting to upstream network {request.ssid}.",
            metadata={"ssid": request.ssid, "attempt": session.connect_attempts},
        )
        self._note_connect(request.ssid, "connecting")
        if not self._provisioning.suspend():
            self._reply(
                request, ConnectOutcome(False, request.ssid, "unable to release the access point interface")
            )
            return False

        outcome = self._connector.connect(request.ssid, request.credential, self._settings.connect_timeout)
        if outcome.success:
            self._provisioning.close_session(SessionOutcome.CONNECTED, request.ssid)
            self._reset_failures()
            self._note_connect(request.ssid, "connected")
            self._commit(NetworkState.WIFI_CONNECTED, session.interface)
            request.reply.set_result(outcome)
            return True

        self._record(
            "connect_failed",
            f"Connection to {request.ssid} failed: {outcome.error_detail}.",
            level="warning",
            metadata={"ssid": request.ssid},
        )
        if self._provisioning.resume(session):
            self._reply(request, outcome)
            return False
        self._provisioning.close_session(SessionOutcome.ABORTED)
        self._commit(NetworkState.DISCONNECTED, None)
        self._reply(request, outcome)
        return True

    def _reply(self, request: ConnectRequest, outcome: ConnectOutcome) -> None:
        if not outcome.success:
            self._note_connect(request.ssid, "failed", outcome.error_detail or "connection failed")
        request.reply.set_result(outcome)

    def _note_connect(self, ssid: str, result: str, error: str | None = None) -> None:
        """Publish the latest connect attempt so the portal can report it later."""

        self._write_status(
            last_connect_ssid=ssid,
            last_connect_result=result,
            last_connect_error=error,
            last_connect_time=time.time(),
        )

    def _handle_upstream_connected(self, event: UpstreamConnected) -> bool:
        if self._state is not NetworkState.PROVISIONING_ACTIVE:
            return False
        session = self._provisioning.session
        if not self._provisioning.stop(SessionOutcome.CONNECTED, event.ssid):
            self._register_failure("deactivate")
            return False
        self._reset_failures()
        self._commit(NetworkState.WIFI_CONNECTED, session.interface if session else None)
        return True

    def _fail_pending_requests(self, detail: str) -> None:
        pending = list(self._inbox)
        self._inbox.clear()
        while True:
            try:
                pending.append(self._events.get_nowait())
            except queue.Empty:
                break
        for event in pending:
            if isinstance(event, ConnectRequest) and event.reply.set_running_or_notify_cancel():
                self._reply(event, ConnectOutcome(False, event.ssid, detail))

    # ------------------------------ transitions ----------------------------
    def _safe_probe(self, interface_class: str) -> LinkObservation:
        try:
            return self._prober.probe(interface_class)
        except ProbeError as exc:
            logger.warning("Probe of %s links failed in state %s: %s", interface_class, self._state.value, exc)
            return LinkObservation(interface_class=interface_class)

    def _dwell_satisfied(self, target: NetworkState) -> bool:
        if target is self._pending_target:
            self._pending_count += 1
        else:
            self._pending_target = target
            self._pending_count = 1
        return self._pending_count >= self._settings.dwell_cycles

    def _transition(self, target: NetworkState, interface: str | None) -> None:
        if self._state is NetworkState.PROVISIONING_ACTIVE:
            if not self._provisioning.stop(SessionOutcome.CONNECTED):
                self._register_failure("deactivate")
                return
            self._reset_failures()
        if target is NetworkState.PROVISIONING_ACTIVE:
            ap_interface = self._ap_interface
            session = self._provisioning.start(ap_interface) if ap_interface else None
            if session is None:
                self._register_failure("activate")
                return
            self._reset_failures()
            self._commit(target, session.interface)
            return
        self._commit(target, interface)

    def _expire_session(self) -> bool:
        timeout = self._settings.session_timeout
        session = self._provisioning.session
        if timeout is None or session is None or session.age() < timeout:
            return False
        self._record(
            "session_timeout",
            f"Provisioning session exceeded {timeout:g}s without a connection.",
            level="warning",
            metadata={"session_id": session.session_id},
        )
        if not self._provisioning.stop(SessionOutcome.TIMED_OUT):
            self._register_failure("deactivate")
            return True
        self._commit(NetworkState.DISCONNECTED, None)
        return True

    def _repair_access_point(self) -> bool:
        controller = self._provisioning.controller
        if controller.health().get("healthy"):
            return False
        session = self._provisioning.session
        self._record("ap_unhealthy", "Provisioning access point is not healthy; restarting it.", level="warning")
        if not self._provisioning.suspend():
            self._register_failure("deactivate")
            return True
        if session is not None and self._provisioning.resume(session):
            self._reset_failures()
            return True
        # The access point is down; leave provisioning so the next cycle starts over.
        self._provisioning.close_session(SessionOutcome.ABORTED)
        self._commit(NetworkState.DISCONNECTED, None)
        self._register_failure("activate")
        return True

    def _register_failure(self, kind: str) -> None:
        self._failures += 1
        limit = self._settings.max_consecutive_failures
        if self._failures >= limit and not self._degraded:
            self._degraded = True
            self._record(
                "degraded",
                f"Access point {kind} failed {self._failures} consecutive times; backing off.",
                level="error",
                metadata={"failures": self._failures, "interval": self.current_interval()},
            )
        else:
            logger.warning(
                "Access point %s failed in state %s (%d consecutive)",
                kind,
                self._state.value,
                self._failures,
            )
        self._write_status()

    def _reset_failures(self) -> None:
        if self._failures or self._degraded:
            logger.info("Access point recovered after %d failures", self._failures)
        self._failures = 0
        self._degraded = False

    def _commit(self, target: NetworkState, interface: str | None) -> None:
        previous = self._state
        self._state = target
        self._pending_target = None
        self._pending_count = 0
        now = time.time()
        self._write_status(active_interface=interface, last_transition_time=now, last_observation_time=now)
        self._record(
            "state_changed",
            f"Network state changed from {previous.value} to {target.value}.",
            metadata={"from": previous.value, "to": target.value, "interface": interface},
        )

    def _write_status(self, **changes: object) -> None:
        session = self._provisioning.session
        record = self._status_store.current().evolve(
            state=self._state,
            degraded=self._degraded,
            consecutive_failures=self._failures,
            session_id=session.session_id if session and self._state is NetworkState.PROVISIONING_ACTIVE else None,
            **changes,
        )
        self._status_store.write(record)

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
        self._system_log.record(
            "network", event, message, level=level, state=self._state.value, metadata=metadata
        )


def build_supervisor(settings: NetwatchSettings | None = None) -> NetworkSupervisor:
    """Wire the production collaborators together from ``settings``."""

    from .portal import PortalServer, create_portal_app

    settings = settings or NetwatchSettings()
    system_log = SystemLog(settings.paths.event_log_path)
    status_store = StatusStore(settings.paths.status_path)
    prober = LinkProber(
        ping_target=settings.probe.ping_target,
        ping_timeout=settings.probe.ping_timeout,
        command_timeout=settings.probe.command_timeout,
    )
    connector = UpstreamConnector(settings.access_point.interface)
    holder: list[NetworkSupervisor] = []

    app = create_portal_app(
        scanner=connector.scan,
        submit_connect=lambda ssid, password: holder[0].submit_connect(ssid, password),
        status_provider=lambda: holder[0].status(),
        system_log=system_log,
        diagnostics_provider=lambda: holder[0].diagnostics(),
    )
    controller = APController(
        HostapdDriver(settings.paths.runtime_dir, timeout=settings.probe.command_timeout),
        PortalServer(app),
        verify_timeout=settings.access_point.verify_timeout,
        system_log=system_log,
    )
    provisioning = ProvisioningService(controller, settings.access_point, system_log)
    supervisor = NetworkSupervisor(
        prober,
        provisioning,
        connector,
        status_store,
        settings.supervisor,
        system_log=system_log,
        ap_interface=settings.access_point.interface,
    )
    holder.append(supervisor)
    return supervisor


__all__ = [
    "ConnectRequest",
    "NetworkSupervisor",
    "Shutdown",
    "SupervisorEvent",
    "UpstreamConnected",
    "backoff_interval",
    "build_supervisor",
    "decide_target",
]
