"""Command line interface: ``netwatch run|check|status|diagnose``."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Sequence

from . import diagnostics
from .config import DEFAULT_CONFIG_PATH, LOG_LEVELS, NetwatchSettings, load_settings
from .errors import ConfigError, ProbeError, SupervisorStartupError
from .prober import WIFI, WIRED, LinkObservation, LinkProber
from .status import NetworkState, read_status
from .supervisor import build_supervisor
from .version import APP_VERSION

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the netwatch CLI."""

    parser = argparse.ArgumentParser(
        prog="netwatch",
        description="Keep a headless host online, falling back to a WiFi provisioning access point.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Configuration file (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--log-level",
        choices=[level.lower() for level in LOG_LEVELS] + list(LOG_LEVELS),
        default=None,
        help="Override the configured log level.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Run the network supervisor until stopped.")
    for name, help_text in (
        ("check", "Probe the wired then the WiFi link once."),
        ("status", "Print the last recorded supervisor status."),
        ("diagnose", "Report on wireless hardware and required tools."),
    ):
        command = subparsers.add_parser(name, help=help_text)
        command.add_argument("--json", action="store_true", help="Emit results as JSON for scripting.")
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _format_time(timestamp: float | None) -> str:
    if not timestamp:
        return "-"
    return datetime.fromtimestamp(timestamp).isoformat(timespec="seconds")


# ------------------------------ subcommands ---------------------------------
def cmd_run(settings: NetwatchSettings) -> int:
    supervisor = build_supervisor(settings)

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %s; shutting down", signum)
        supervisor.request_stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    try:
        supervisor.run()
    except SupervisorStartupError as exc:
        logger.error("Cannot start supervisor: %s", exc)
        return 1
    return 0


def cmd_check(settings: NetwatchSettings, *, as_json: bool = False) -> int:
    prober = LinkProber(
        ping_target=settings.probe.ping_target,
        ping_timeout=settings.probe.ping_timeout,
        command_timeout=settings.probe.command_timeout,
    )
    observations: list[LinkObservation] = []
    state = NetworkState.DISCONNECTED
    interface: str | None = None
    try:
        for interface_class, candidate in ((WIRED, NetworkState.ETHERNET_CONNECTED), (WIFI, NetworkState.WIFI_CONNECTED)):
            observation = prober.probe(interface_class)
            observations.append(observation)
            if observation.usable:
                state, interface = candidate, observation.interface
                break
    except ProbeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if as_json:
        json.dump(
            {
                "state": state.value,
                "interface": interface,
                "observations": [observation.to_dict() for observation in observations],
            },
            sys.stdout,
        )
        sys.stdout.write("\n")
    else:
        for observation in observations:
            verdict = "usable" if observation.usable else "not usable"
            print(
                f"{observation.interface_class}: {observation.interface or 'no interface'} "
                f"({observation.address or 'no address'}) {verdict}"
            )
        print(state.value if interface is None else f"{state.value} via {interface}")
    return 0 if state.connected else 1


def cmd_status(settings: NetwatchSettings, *, as_json: bool = False) -> int:
    record = read_status(settings.paths.status_path)
    if record is None:
        if as_json:
            json.dump({"state": "unknown"}, sys.stdout)
            sys.stdout.write("\n")
        else:
            print("unknown")
        return 1
    if as_json:
        json.dump(record.to_dict(), sys.stdout)
        sys.stdout.write("\n")
    else:
        print(f"state: {record.state.value}")
        print(f"interface: {record.active_interface or '-'}")
        print(f"since: {_format_time(record.last_transition_time)}")
        print(f"last observation: {_format_time(record.last_observation_time)}")
        print(f"degraded: {'yes' if record.degraded else 'no'}")
        if record.consecutive_failures:
            print(f"consecutive failures: {record.consecutive_failures}")
        if record.session_id:
            print(f"provisioning session: {record.session_id}")
    return 0 if record.state.connected else 1


def cmd_diagnose(*, as_json: bool = False) -> int:
    payload = diagnostics.collect_diagnostics()
    if as_json:
        json.dump(payload, sys.stdout)
        sys.stdout.write("\n")
    else:
        diagnostics.render(payload)
    return 0 if payload["ok"] else 1


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "diagnose":
        configure_logging(args.log_level or "WARNING")
        return cmd_diagnose(as_json=args.json)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(args.log_level or settings.log_level)

    if args.command == "run":
        return cmd_run(settings)
    if args.command == "check":
        return cmd_check(settings, as_json=args.json)
    return cmd_status(settings, as_json=args.json)


__all__ = ["build_parser", "cmd_check", "cmd_diagnose", "cmd_run", "cmd_status", "configure_logging", "main"]
