import threading
import time
from pathlib import Path

import pytest

from netwatch.ap import APConfig, APController, APDriver
from netwatch.config import AccessPointSettings, SupervisorSettings
from netwatch.connector import ConnectOutcome
from netwatch.errors import APError, ProbeError, SupervisorStartupError
from netwatch.prober import WIFI, WIRED, InterfaceInfo, LinkObservation
from netwatch.provisioning import ProvisioningService, SessionOutcome
from netwatch.status import NetworkState, StatusStore, read_status
from netwatch.supervisor import NetworkSupervisor, backoff_interval, decide_target
from netwatch.system_log import SystemLog


class FakeProber:
    def __init__(self) -> None:
        self.links: dict[str, str | None] = {WIRED: None, WIFI: None}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.wifi_interfaces = ["wlan0"]

    def probe(self, interface_class: str) -> LinkObservation:
        self.calls.append(interface_class)
        if interface_class in self.errors:
            raise self.errors[interface_class]
        interface = self.links[interface_class]
        if interface is None:
            return LinkObservation(interface_class=interface_class)
        return LinkObservation(
            interface_class=interface_class,
            interface=interface,
            has_carrier=True,
            address="192.168.1.50",
            reachable=True,
        )

    def list_interfaces(self, interface_class: str) -> list[InterfaceInfo]:
        return [InterfaceInfo(name, True, True) for name in self.wifi_interfaces]


class FakeDriver(APDriver):
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_on: dict[str, int] = {}
        self.processes: dict[str, bool] = {}
        self.configs: list[APConfig] = []
        self.stale_cleanups: list[str | None] = []

    def _step(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on.get(name):
            self.fail_on[name] -= 1
            raise APError(f"{name} failed", step=name)

    def release_interface(self, interface: str) -> None:
        self._step("release_interface")

    def reclaim_interface(self, interface: str) -> None:
        self._step("reclaim_interface")

    def assign_address(self, config: APConfig) -> None:
        self._step("assign_address")
        self.configs.append(config)

    def flush_address(self, interface: str) -> None:
        self._step("flush_address")

    def start_beacon(self, config: APConfig) -> None:
        self._step("start_beacon")
        self.processes["hostapd"] = True

    def stop_beacon(self) -> None:
        self._step("stop_beacon")
        self.processes["hostapd"] = False

    def start_dhcp(self, config: APConfig) -> None:
        self._step("start_dhcp")
        self.processes["dnsmasq"] = True

    def stop_dhcp(self) -> None:
        self._step("stop_dhcp")
        self.processes["dnsmasq"] = False

    def cleanup_stale(self, interface: str | None) -> None:
        self.stale_cleanups.append(interface)

    def health(self) -> dict[str, bool]:
        return dict(self.processes)

    def count(self, name: str) -> int:
        return self.calls.count(name)


class FakeConnector:
    def __init__(self, controller: APController) -> None:
        self.controller = controller
        self.succeed = True
        self.attempts: list[tuple[str, str | None, float]] = []
        self.ap_active_during_attempt: list[bool] = []

    def connect(self, ssid: str, credential: str | None, timeout: float = 45.0) -> ConnectOutcome:
        self.attempts.append((ssid, credential, timeout))
        self.ap_active_during_attempt.append(self.controller.is_active())
        if self.succeed:
            return ConnectOutcome(True, ssid)
        return ConnectOutcome(False, ssid, "Secrets were required, but not provided.")


class Harness:
    def __init__(self, tmp_path: Path, **settings: object) -> None:
        self.prober = FakeProber()
        self.driver = FakeDriver()
        self.system_log = SystemLog(None)
        self.controller = APController(self.driver, system_log=self.system_log)
        self.provisioning = ProvisioningService(
            self.controller,
            AccessPointSettings(),
            self.system_log,
            hostname_provider=lambda: "kiosk",
        )
        self.connector = FakeConnector(self.controller)
        self.status_path = tmp_path / "status.json"
        self.settings = SupervisorSettings(**settings)  # type: ignore[arg-type]
        self.supervisor = NetworkSupervisor(
            self.prober,  # type: ignore[arg-type]
            self.provisioning,
            self.connector,  # type: ignore[arg-type]
            StatusStore(self.status_path),
            self.settings,
            system_log=self.system_log,
            ap_interface="wlan0",
        )

    def enter_provisioning(self) -> None:
        assert self.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE

    def state_changes(self) -> list[str]:
        return [str((entry.metadata or {}).get("to")) for entry in self.system_log.tail(event="state_changed")]


@pytest.fixture()
def harness(tmp_path: Path) -> Harness:
    return Harness(tmp_path)


def _usable(interface_class: str, interface: str) -> LinkObservation:
    return LinkObservation(interface_class, interface, True, "10.0.0.2", True)


# ------------------------------ decision table ------------------------------
@pytest.mark.parametrize(
    ("wired", "wifi", "expected"),
    [
        (_usable(WIRED, "eth0"), _usable(WIFI, "wlan0"), (NetworkState.ETHERNET_CONNECTED, "eth0")),
        (_usable(WIRED, "eth0"), None, (NetworkState.ETHERNET_CONNECTED, "eth0")),
        (LinkObservation(WIRED, "eth0", True, "10.0.0.2", False), _usable(WIFI, "wlan0"), (NetworkState.WIFI_CONNECTED, "wlan0")),
        (LinkObservation(WIRED), _usable(WIFI, "wlan0"), (NetworkState.WIFI_CONNECTED, "wlan0")),
        (LinkObservation(WIRED), LinkObservation(WIFI, "wlan0", True, None, False), (NetworkState.PROVISIONING_ACTIVE, None)),
        (LinkObservation(WIRED), None, (NetworkState.PROVISIONING_ACTIVE, None)),
        (None, None, (NetworkState.PROVISIONING_ACTIVE, None)),
    ],
)
def test_decide_target_precedence(wired, wifi, expected) -> None:
    assert decide_target(wired, wifi) == expected


@pytest.mark.parametrize(
    ("current", "wired", "wifi", "expected"),
    [
        (NetworkState.DISCONNECTED, "eth0", None, NetworkState.ETHERNET_CONNECTED),
        (NetworkState.DISCONNECTED, None, "wlan0", NetworkState.WIFI_CONNECTED),
        (NetworkState.DISCONNECTED, None, None, NetworkState.PROVISIONING_ACTIVE),
        (NetworkState.ETHERNET_CONNECTED, None, "wlan0", NetworkState.WIFI_CONNECTED),
        (NetworkState.ETHERNET_CONNECTED, None, None, NetworkState.PROVISIONING_ACTIVE),
        (NetworkState.WIFI_CONNECTED, "eth0", "wlan0", NetworkState.ETHERNET_CONNECTED),
        (NetworkState.WIFI_CONNECTED, None, None, NetworkState.PROVISIONING_ACTIVE),
        (NetworkState.PROVISIONING_ACTIVE, "eth0", None, NetworkState.ETHERNET_CONNECTED),
        (NetworkState.PROVISIONING_ACTIVE, None, "wlan0", NetworkState.PROVISIONING_ACTIVE),
        (NetworkState.PROVISIONING_ACTIVE, None, None, NetworkState.PROVISIONING_ACTIVE),
    ],
)
def test_transition_table(tmp_path: Path, current, wired, wifi, expected) -> None:
    harness = Harness(tmp_path)
    prober = harness.prober
    if current is NetworkState.ETHERNET_CONNECTED:
        prober.links[WIRED] = "eth0"
    elif current is NetworkState.WIFI_CONNECTED:
        prober.links[WIFI] = "wlan0"
    if current is not NetworkState.DISCONNECTED:
        assert harness.supervisor.run_cycle() is current

    prober.links[WIRED] = wired
    prober.links[WIFI] = wifi

    assert harness.supervisor.run_cycle() is expected


def test_backoff_interval_policy() -> None:
    settings = SupervisorSettings(poll_interval=10, max_consecutive_failures=5, max_backoff_interval=300)

    assert backoff_interval(settings, 0) == 10
    assert backoff_interval(settings, 4) == 10
    assert backoff_interval(settings, 5) == 20
    assert backoff_interval(settings, 6) == 40
    assert backoff_interval(settings, 20) == 300


# -------------------------------- scenarios ---------------------------------
def test_wired_link_becomes_ethernet_connected(harness: Harness) -> None:
    harness.prober.links[WIRED] = "eth0"

    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED

    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.ETHERNET_CONNECTED
    assert record.active_interface == "eth0"
    assert WIFI not in harness.prober.calls


def test_no_link_starts_provisioning_once(harness: Harness) -> None:
    harness.enter_provisioning()
    harness.supervisor.run_cycle()
    harness.supervisor.run_cycle()

    assert harness.driver.count("release_interface") == 1
    assert harness.driver.configs[0].ssid == "kiosk-setup"
    session = harness.provisioning.session
    assert session is not None
    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.PROVISIONING_ACTIVE
    assert record.session_id == session.session_id
    assert record.active_interface == "wlan0"


def test_wifi_is_not_probed_while_provisioning(harness: Harness) -> None:
    harness.enter_provisioning()
    harness.prober.calls.clear()

    harness.supervisor.run_cycle()

    assert harness.prober.calls == [WIRED]


def test_connected_signal_deactivates_and_commits_wifi(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    assert session is not None

    harness.supervisor.notify_connected("HomeNet")
    state = harness.supervisor.run_cycle()

    assert state is NetworkState.WIFI_CONNECTED
    assert harness.driver.count("reclaim_interface") == 1
    assert not harness.controller.is_active()
    assert session.outcome is SessionOutcome.CONNECTED
    assert session.connected_ssid == "HomeNet"
    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.WIFI_CONNECTED
    assert record.session_id is None


def test_wired_loss_keeps_wifi_connected(harness: Harness) -> None:
    harness.prober.links[WIRED] = "eth0"
    harness.prober.links[WIFI] = "wlan0"
    harness.supervisor.run_cycle()
    harness.prober.links[WIRED] = None
    assert harness.supervisor.run_cycle() is NetworkState.WIFI_CONNECTED

    harness.prober.links[WIRED] = None
    state = harness.supervisor.run_cycle()

    assert state is NetworkState.WIFI_CONNECTED
    assert harness.driver.calls == []
    assert harness.state_changes() == ["ethernet-connected", "wifi-connected"]


def test_repeated_activation_failure_degrades_and_backs_off(harness: Harness) -> None:
    harness.driver.fail_on["release_interface"] = 5

    for attempt in range(1, 5):
        assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED
        assert not harness.supervisor.degraded
        assert harness.supervisor.current_interval() == 10
    assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED

    record = read_status(harness.status_path)
    assert record is not None
    assert record.degraded is True
    assert record.consecutive_failures == 5
    assert record.state is NetworkState.DISCONNECTED
    assert harness.supervisor.current_interval() == 20
    assert harness.driver.count("release_interface") == 5
    assert harness.system_log.tail(event="degraded")

    assert harness.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE
    assert not harness.supervisor.degraded
    assert harness.supervisor.current_interval() == 10


# ------------------------------- properties ---------------------------------
def test_duplicate_connected_signal_is_ignored(harness: Harness) -> None:
    harness.enter_provisioning()
    harness.supervisor.notify_connected("HomeNet")
    harness.supervisor.run_cycle()
    entries_before = len(harness.system_log.tail())

    harness.supervisor.notify_connected("HomeNet")
    harness.prober.links[WIFI] = "wlan0"
    state = harness.supervisor.run_cycle()

    assert state is NetworkState.WIFI_CONNECTED
    assert len(harness.system_log.tail()) == entries_before
    assert len(harness.system_log.tail(event="session_closed")) == 1


def test_connected_signal_outside_provisioning_is_ignored(harness: Harness) -> None:
    harness.supervisor.notify_connected("HomeNet")
    harness.prober.links[WIRED] = "eth0"

    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED
    assert harness.state_changes() == ["ethernet-connected"]


def test_connect_request_success(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session

    future = harness.supervisor.submit_connect("HomeNet", "supersecret")
    state = harness.supervisor.run_cycle()

    outcome = future.result(timeout=0)
    assert outcome.success
    assert state is NetworkState.WIFI_CONNECTED
    assert harness.connector.attempts == [("HomeNet", "supersecret", 45.0)]
    assert harness.connector.ap_active_during_attempt == [False]
    assert session is not None and session.outcome is SessionOutcome.CONNECTED
    assert session.connect_attempts == 1
    assert harness.supervisor.status().last_connect_result == "connected"


def test_connect_request_failure_restores_access_point(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    harness.connector.succeed = False

    future = harness.supervisor.submit_connect("HomeNet", "wrongpassword")
    state = harness.supervisor.run_cycle()

    outcome = future.result(timeout=0)
    assert not outcome.success
    assert outcome.error_detail == "Secrets were required, but not provided."
    assert state is NetworkState.PROVISIONING_ACTIVE
    assert harness.controller.is_active()
    assert harness.provisioning.session is session
    assert session is not None and not session.closed
    assert session.connect_attempts == 1
    assert harness.driver.count("release_interface") == 2
    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.PROVISIONING_ACTIVE
    assert record.last_connect_ssid == "HomeNet"
    assert record.last_connect_result == "failed"
    assert record.last_connect_error == "Secrets were required, but not provided."


def test_connect_request_failure_with_lost_access_point(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    harness.connector.succeed = False
    harness.driver.fail_on["release_interface"] = 1

    future = harness.supervisor.submit_connect("HomeNet", "wrongpassword")
    state = harness.supervisor.run_cycle()

    assert not future.result(timeout=0).success
    assert state is NetworkState.DISCONNECTED
    assert session is not None and session.outcome is SessionOutcome.ABORTED


def test_connect_request_outside_provisioning_fails(harness: Harness) -> None:
    harness.prober.links[WIRED] = "eth0"
    harness.supervisor.run_cycle()

    future = harness.supervisor.submit_connect("HomeNet", "supersecret")
    harness.supervisor.run_cycle()

    outcome = future.result(timeout=0)
    assert not outcome.success
    assert outcome.error_detail == "provisioning is not active"
    assert harness.connector.attempts == []


def test_cancelled_connect_request_is_skipped(harness: Harness) -> None:
    harness.enter_provisioning()

    future = harness.supervisor.submit_connect("HomeNet", "supersecret")
    assert future.cancel()
    harness.supervisor.run_cycle()

    assert harness.connector.attempts == []
    assert harness.supervisor.state is NetworkState.PROVISIONING_ACTIVE


def test_wired_return_stops_provisioning_before_commit(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    harness.prober.links[WIRED] = "eth0"

    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED
    assert not harness.controller.is_active()
    assert session is not None and session.outcome is SessionOutcome.CONNECTED


def test_deactivation_failure_keeps_provisioning(harness: Harness) -> None:
    harness.enter_provisioning()
    harness.prober.links[WIRED] = "eth0"
    harness.driver.fail_on["stop_dhcp"] = 1

    assert harness.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE
    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.PROVISIONING_ACTIVE
    assert record.consecutive_failures == 1

    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED
    assert harness.supervisor.consecutive_failures == 0
    assert harness.driver.count("stop_dhcp") == 2


def test_probe_error_counts_as_no_link(harness: Harness) -> None:
    harness.prober.errors[WIRED] = ProbeError("ip command unavailable")
    harness.prober.links[WIFI] = "wlan0"

    assert harness.supervisor.run_cycle() is NetworkState.WIFI_CONNECTED


def test_dwell_requires_consistent_observations(tmp_path: Path) -> None:
    harness = Harness(tmp_path, dwell_cycles=2)
    harness.prober.links[WIRED] = "eth0"

    assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED
    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED

    harness.prober.links[WIRED] = None
    harness.prober.links[WIFI] = "wlan0"
    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED
    harness.prober.links[WIRED] = "eth0"
    assert harness.supervisor.run_cycle() is NetworkState.ETHERNET_CONNECTED
    assert harness.state_changes() == ["ethernet-connected"]


def test_session_timeout_closes_session(tmp_path: Path) -> None:
    harness = Harness(tmp_path, session_timeout=60)
    harness.enter_provisioning()
    session = harness.provisioning.session
    assert session is not None
    session.started_at -= 120

    assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED
    assert session.outcome is SessionOutcome.TIMED_OUT
    assert not harness.controller.is_active()

    assert harness.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE
    new_session = harness.provisioning.session
    assert new_session is not None and new_session.session_id != session.session_id


def test_dead_access_point_is_restarted(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    harness.driver.processes["hostapd"] = False

    assert harness.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE

    assert harness.driver.count("release_interface") == 2
    assert harness.controller.health()["healthy"] is True
    assert harness.provisioning.session is session
    assert harness.system_log.tail(event="ap_unhealthy")


def test_failed_access_point_restart_leaves_provisioning(harness: Harness) -> None:
    harness.enter_provisioning()
    session = harness.provisioning.session
    harness.driver.processes["hostapd"] = False
    harness.driver.fail_on["start_beacon"] = 2

    assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED
    assert harness.controller.state.value == "stopped"
    assert session is not None and session.outcome is SessionOutcome.ABORTED
    assert harness.provisioning.session is None
    record = read_status(harness.status_path)
    assert record is not None
    assert record.state is NetworkState.DISCONNECTED
    assert record.session_id is None
    assert harness.supervisor.consecutive_failures == 1

    assert harness.supervisor.run_cycle() is NetworkState.DISCONNECTED
    assert harness.supervisor.consecutive_failures == 2

    assert harness.supervisor.run_cycle() is NetworkState.PROVISIONING_ACTIVE
    assert harness.controller.health()["healthy"] is True
    assert harness.provisioning.session is not session
    assert harness.supervisor.consecutive_failures == 0


def test_diagnostics_reports_access_point_health(harness: Harness) -> None:
    report = harness.supervisor.diagnostics()
    assert report["access_point"]["state"] == "stopped"
    assert report["access_point"]["healthy"] is False

    harness.enter_provisioning()
    harness.driver.processes["dnsmasq"] = False

    report = harness.supervisor.diagnostics()
    assert report["status"]["state"] == "provisioning-active"
    assert report["degraded"] is False
    assert report["access_point"]["processes"] == {"hostapd": True, "dnsmasq": False}
    assert report["access_point"]["healthy"] is False


# ------------------------------- lifecycle ----------------------------------
def test_startup_requires_wireless_interface(harness: Harness) -> None:
    harness.prober.wifi_interfaces = []

    with pytest.raises(SupervisorStartupError):
        harness.supervisor.start()


def test_startup_rejects_unknown_configured_interface(harness: Harness) -> None:
    harness.prober.wifi_interfaces = ["wlan1"]

    with pytest.raises(SupervisorStartupError):
        harness.supervisor.check_preconditions()


def test_background_loop_starts_and_shuts_down_cleanly(tmp_path: Path) -> None:
    harness = Harness(tmp_path, poll_interval=0.05, max_backoff_interval=1)
    supervisor = harness.supervisor

    supervisor.start()
    deadline = time.monotonic() + 5
    while supervisor.state is not NetworkState.PROVISIONING_ACTIVE and time.monotonic() < deadline:
        time.sleep(0.01)
    assert supervisor.state is NetworkState.PROVISIONING_ACTIVE
    session = harness.provisioning.session

    supervisor.stop(timeout=5)

    assert harness.driver.stale_cleanups == ["wlan0"]
    assert supervisor.state is NetworkState.DISCONNECTED
    assert not harness.controller.is_active()
    assert session is not None and session.outcome is SessionOutcome.ABORTED
    assert [entry.event for entry in harness.system_log.tail(category="network")][-1] == "supervisor_stopped"


def test_connect_request_wakes_background_loop(tmp_path: Path) -> None:
    harness = Harness(tmp_path, poll_interval=30, max_backoff_interval=60)
    supervisor = harness.supervisor
    supervisor.start()
    try:
        deadline = time.monotonic() + 5
        while supervisor.state is not NetworkState.PROVISIONING_ACTIVE and time.monotonic() < deadline:
            time.sleep(0.01)

        outcome = supervisor.submit_connect("HomeNet", "supersecret").result(timeout=5)

        assert outcome.success
        assert supervisor.state is NetworkState.WIFI_CONNECTED
    finally:
        supervisor.stop(timeout=5)


def test_request_stop_ends_foreground_run(tmp_path: Path) -> None:
    harness = Harness(tmp_path, poll_interval=30, max_backoff_interval=60)
    supervisor = harness.supervisor
    runner = threading.Thread(target=supervisor.run, daemon=True)
    runner.start()
    deadline = time.monotonic() + 5
    while supervisor.state is not NetworkState.PROVISIONING_ACTIVE and time.monotonic() < deadline:
        time.sleep(0.01)
    assert supervisor.state is NetworkState.PROVISIONING_ACTIVE

    supervisor.request_stop()
    runner.join(timeout=5)

    assert not runner.is_alive()
    assert supervisor.state is NetworkState.DISCONNECTED
    assert not harness.controller.is_active()
