"""Wireless hardware and tooling diagnostics."""
from __future__ import annotations

import argparse
import json
import shutil
import subprocess
import sys
from pathlib import Path
from typing import Callable, Sequence

from .prober import WIFI, classify_interface
from .version import APP_VERSION

REQUIRED_TOOLS = ("ip", "iw", "nmcli", "hostapd", "dnsmasq", "ping")
WIRELESS_MODULES = ("cfg80211", "mac80211")

NO_INTERFACE_HINT = (
    "No wireless interface was found. Check that the adapter is attached, that its "
    "driver is loaded (`lsmod | grep 80211`) and that `rfkill list` does not report "
    "it as blocked."
)

MISSING_TOOL_HINT = "Install the missing tools with your package manager (for example `apt install {tools}`)."

NETWORK_MANAGER_HINT = (
    "NetworkManager is not active. netwatch hands the wireless interface back to it "
    "after provisioning; start it with `systemctl enable --now NetworkManager`."
)

MODULES_HINT = (
    "The cfg80211/mac80211 kernel modules are not loaded. Most WiFi drivers depend on "
    "them; try `modprobe cfg80211`."
)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the diagnostics CLI."""

    parser = argparse.ArgumentParser(
        prog="python -m netwatch.diagnostics",
        description="netwatch wireless diagnostics",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Emit results as JSON for scripting.",
    )
    return parser


def list_wireless_interfaces(sysfs_root: Path = Path("/sys/class/net")) -> list[str]:
    try:
        names = sorted(entry.name for entry in sysfs_root.iterdir())
    except OSError:
        return []
    return [name for name in names if classify_interface(name, sysfs_root=sysfs_root) == WIFI]


def loaded_wireless_modules(proc_modules: Path = Path("/proc/modules")) -> list[str]:
    try:
        lines = proc_modules.read_text(encoding="utf-8").splitlines()
    except OSError:
        return []
    loaded = {line.split()[0] for line in lines if line.strip()}
    return [module for module in WIRELESS_MODULES if module in loaded]


def network_manager_active(runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run) -> bool | None:
    """Return NetworkManager's activity, or ``None`` when systemd cannot be asked."""

    try:
        completed = runner(
            ["systemctl", "is-active", "NetworkManager"],
            check=False,
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    return completed.stdout.strip() == "active"


def collect_diagnostics(
    *,
    sysfs_root: Path = Path("/sys/class/net"),
    proc_modules: Path = Path("/proc/modules"),
    which: Callable[[str], str | None] = shutil.which,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
) -> dict[str, object]:
    """Collect diagnostics payload used by the CLI."""

    interfaces = list_wireless_interfaces(sysfs_root)
    tools = {tool: which(tool) is not None for tool in REQUIRED_TOOLS}
    modules = loaded_wireless_modules(proc_modules)
    nm_active = network_manager_active(runner)

    hints: list[str] = []
    if not interfaces:
        hints.append(NO_INTERFACE_HINT)
    missing = [tool for tool, present in tools.items() if not present]
    if missing:
        hints.append(MISSING_TOOL_HINT.format(tools=" ".join(missing)))
    if nm_active is False:
        hints.append(NETWORK_MANAGER_HINT)
    if not modules:
        hints.append(MODULES_HINT)

    return {
        "version": APP_VERSION,
        "wireless_interfaces": interfaces,
        "tools": tools,
        "kernel_modules": modules,
        "network_manager_active": nm_active,
        "hints": hints,
        "ok": bool(interfaces),
    }


def render(payload: dict[str, object]) -> None:
    print(f"netwatch diagnostics (version {APP_VERSION})")
    interfaces = payload.get("wireless_interfaces") or []
    if interfaces:
        print(f"Wireless interfaces: {', '.join(interfaces)}")  # type: ignore[arg-type]
    else:
        print("Wireless interfaces: none found")
    tools = payload.get("tools")
    if isinstance(tools, dict):
        print("Tools:")
        for tool, present in tools.items():
            print(f" - {tool}: {'found' if present else 'missing'}")
    modules = payload.get("kernel_modules") or []
    print(f"Kernel modules: {', '.join(modules) if modules else 'none loaded'}")  # type: ignore[arg-type]
    nm_active = payload.get("network_manager_active")
    nm_text = "unknown" if nm_active is None else ("active" if nm_active else "inactive")
    print(f"NetworkManager: {nm_text}")
    hints = payload.get("hints") or []
    if hints:
        print("Hints:")
        for hint in hints:  # type: ignore[union-attr]
            print(f" - {hint}")


def run(argv: Sequence[str] | None = None) -> int:
    """Execute the diagnostics CLI with *argv* arguments."""

    parser = build_parser()
    args = parser.parse_args(argv)
    payload = collect_diagnostics()
    if args.json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
    else:
        render(payload)
    return 0 if payload["ok"] else 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by `python -m netwatch.diagnostics`."""

    return run(argv)


__all__ = [
    "build_parser",
    "collect_diagnostics",
    "list_wireless_interfaces",
    "loaded_wireless_modules",
    "network_manager_active",
    "render",
    "run",
    "main",
]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
