from __future__ import annotations

import json
import subprocess
from pathlib import Path

import pytest

import netwatch.diagnostics as diagnostics


def _systemctl(state: str):
    def runner(args, **kwargs):
        return subprocess.CompletedProcess(args, 0 if state == "active" else 3, f"{state}\n", "")

    return runner


@pytest.fixture()
def host(tmp_path: Path) -> tuple[Path, Path]:
    sysfs = tmp_path / "net"
    (sysfs / "wlan0" / "wireless").mkdir(parents=True)
    (sysfs / "eth0").mkdir()
    (sysfs / "lo").mkdir()
    modules = tmp_path / "modules"
    modules.write_text(
        "brcmfmac 311296 0 - Live 0x0000000000000000\n"
        "cfg80211 999424 1 brcmfmac, Live 0x0000000000000000\n",
        encoding="utf-8",
    )
    return sysfs, modules


def test_collect_diagnostics_healthy_host(host) -> None:
    sysfs, modules = host

    payload = diagnostics.collect_diagnostics(
        sysfs_root=sysfs,
        proc_modules=modules,
        which=lambda tool: f"/usr/bin/{tool}",
        runner=_systemctl("active"),
    )

    assert payload["version"] == diagnostics.APP_VERSION
    assert payload["wireless_interfaces"] == ["wlan0"]
    assert payload["kernel_modules"] == ["cfg80211"]
    assert payload["network_manager_active"] is True
    assert payload["hints"] == []
    assert payload["ok"] is True


def test_collect_diagnostics_reports_problems(tmp_path: Path) -> None:
    sysfs = tmp_path / "net"
    (sysfs / "eth0").mkdir(parents=True)

    payload = diagnostics.collect_diagnostics(
        sysfs_root=sysfs,
        proc_modules=tmp_path / "missing",
        which=lambda tool: None if tool in {"hostapd", "dnsmasq"} else f"/usr/bin/{tool}",
        runner=_systemctl("inactive"),
    )

    assert payload["ok"] is False
    hints = payload["hints"]
    assert diagnostics.NO_INTERFACE_HINT in hints
    assert diagnostics.NETWORK_MANAGER_HINT in hints
    assert diagnostics.MODULES_HINT in hints
    assert any("hostapd dnsmasq" in hint for hint in hints)


def test_network_manager_unknown_without_systemctl() -> None:
    def missing(args, **kwargs):
        raise FileNotFoundError("systemctl")

    assert diagnostics.network_manager_active(missing) is None


def test_run_outputs_json(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(
        diagnostics,
        "collect_diagnostics",
        lambda: {"version": diagnostics.APP_VERSION, "wireless_interfaces": ["wlan0"], "hints": [], "ok": True},
    )

    exit_code = diagnostics.run(["--json"])

    captured = capsys.readouterr()
    assert exit_code == 0
    assert json.loads(captured.out)["wireless_interfaces"] == ["wlan0"]


def test_run_human_output_and_failure(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr(
        diagnostics,
        "collect_diagnostics",
        lambda: {
            "version": diagnostics.APP_VERSION,
            "wireless_interfaces": [],
            "tools": {"iw": False},
            "kernel_modules": [],
            "network_manager_active": None,
            "hints": [diagnostics.NO_INTERFACE_HINT],
            "ok": False,
        },
    )

    exit_code = diagnostics.run([])

    output = capsys.readouterr().out
    assert exit_code == 1
    assert "Wireless interfaces: none found" in output
    assert " - iw: missing" in output
    assert "NetworkManager: unknown" in output
    assert diagnostics.NO_INTERFACE_HINT in output
