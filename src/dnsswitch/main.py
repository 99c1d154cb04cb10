"""Command-line entry point for dnsswitch."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import List, Optional

from . import __version__
from .channel import ChannelManager
from .config.config_parser import DEFAULT_CONFIG_PATH, Settings, load_settings
from .config.logging_config import init_logging
from .engine import build_engine
from .installer import InstallError, OneShotElevator, ServiceInstaller
from .ipc.client import EngineClient
from .ipc.protocol import ProtocolError, Response, encode, request_for
from .ipc.server import start_engine_server
from .models import EscalationOutcome, OpResult

logger = logging.getLogger("dnsswitch.main")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dnsswitch",
        description="Switch system DNS resolvers between plain, DoH and DoT servers",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        default=None,
        help=f"Path to YAML config (default: {DEFAULT_CONFIG_PATH} when present)",
    )
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="NAME=YAML",
        help="Set a config variable (repeatable; overrides environment and file)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_apply = sub.add_parser("apply", help="Apply DNS servers (IP, https://, tls://, doh:, dot:)")
    p_apply.add_argument("servers", nargs="+", metavar="SERVER")
    sub.add_parser("clear", help="Restore default resolvers")
    sub.add_parser("flush", help="Flush the DNS cache")
    p_status = sub.add_parser("status", help="Show the engine's active mode and resolvers")
    p_status.add_argument("--json", action="store_true", help="Print the full status payload")
    sub.add_parser("authorize", help="Install the privileged engine if needed")
    sub.add_parser("engine", help="Run the privileged engine (launchd entry point)")
    p_oneshot = sub.add_parser("oneshot", help=argparse.SUPPRESS)
    p_oneshot.add_argument("op", choices=["apply", "clear", "flush"])
    p_oneshot.add_argument("servers", nargs="*", metavar="SERVER")
    sub.add_parser("install-engine", help="Register the engine as a launchd daemon")
    sub.add_parser("uninstall-engine", help="Remove the launchd daemon")
    return parser


def _report(result: OpResult) -> int:
    stream = sys.stdout if result.ok else sys.stderr
    print(result.message, file=stream)
    return 0 if result.ok else 1


def _installer(settings: Settings) -> ServiceInstaller:
    svc = settings.service
    return ServiceInstaller(
        label=svc.label,
        plist_dir=svc.plist_dir,
        python=svc.python,
        config_path=settings.config_path,
        log_path=svc.log_path,
        osascript=svc.osascript,
        launchctl=svc.launchctl,
        post_install_delay=svc.post_install_delay,
    )


def _channel(settings: Settings) -> ChannelManager:
    def client_factory(on_disconnect):
        return EngineClient(
            settings.engine.socket_path,
            timeout=settings.engine.call_timeout,
            on_disconnect=on_disconnect,
        )

    elevator = OneShotElevator(
        python=settings.service.python,
        config_path=settings.config_path,
        osascript=settings.service.osascript,
    )
    return ChannelManager(client_factory, _installer(settings), elevator)


def run_engine(settings: Settings) -> int:
    """
    Brief: Serve the privileged engine until SIGTERM/SIGINT/SIGHUP.

    Inputs:
      - settings: Loaded Settings.

    Outputs:
      - int exit code (0 on clean shutdown).
    """

    engine = build_engine(settings)
    try:
        handle = start_engine_server(settings.engine.socket_path, engine.handle)
    except OSError as exc:
        logger.error("Cannot listen on %s: %s", settings.engine.socket_path, exc)
        return 1

    shutdown_event = threading.Event()

    def _request_shutdown(signum, _frame):
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
        try:
            signal.signal(sig, _request_shutdown)
        except (OSError, ValueError):  # pragma: no cover - not in the main thread
            logger.warning("Could not install %s handler", sig.name)

    try:
        while not shutdown_event.wait(1.0):
            if not handle.is_running():
                logger.error("Engine server thread exited unexpectedly")
                return 1
    finally:
        handle.stop()
        engine.shutdown()
    return 0


def run_oneshot(settings: Settings, op: str, servers: List[str]) -> int:
    """
    Brief: Execute one request in-process and print the JSON reply last.

    Inputs:
      - settings: Loaded Settings.
      - op: apply, clear or flush.
      - servers: Server strings for apply.

    Outputs:
      - 0 once a reply was printed (the reply carries the outcome).
    """

    engine = build_engine(settings, detach_proxy=True)
    try:
        request = request_for(op, servers)
    except ProtocolError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    result = engine.handle(request)
    sys.stdout.write(encode(Response.from_result(request.id, result)).decode("utf-8"))
    sys.stdout.flush()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """
    Parse arguments, load configuration, initialise logging and run a command.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code: 0 on success, 1 on failure.

    Example use:
        CLI:
            dnsswitch apply 1.1.1.1 1.0.0.1
            dnsswitch apply doh:dns.example.com/dns-query
            PYTHONPATH=src python -m dnsswitch.main --config config.yaml engine
    """

    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config, cli_vars=args.var)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    init_logging(settings.logging)
    logger.debug("Loaded config from %s", settings.config_path or "<defaults>")

    if args.command == "engine":
        return run_engine(settings)
    if args.command == "oneshot":
        return run_oneshot(settings, args.op, list(args.servers))
    if args.command == "install-engine":
        try:
            outcome = _installer(settings).install(force=True)
        except InstallError as exc:
            print(str(exc), file=sys.stderr)
            return 1
        print(outcome.value)
        return 0 if outcome is not EscalationOutcome.DENIED else 1
    if args.command == "uninstall-engine":
        return _report(_installer(settings).uninstall())

    channel = _channel(settings)
    try:
        if args.command == "apply":
            return _report(channel.apply(args.servers))
        if args.command == "clear":
            return _report(channel.clear())
        if args.command == "flush":
            return _report(channel.flush())
        if args.command == "status":
            result = channel.status()
            if args.json and result.data is not None:
                print(json.dumps(result.data, indent=2, sort_keys=True))
                return 0 if result.ok else 1
            return _report(result)
        if args.command == "authorize":
            outcome = channel.authorize()
            print(outcome.value)
            return 0 if outcome is not EscalationOutcome.DENIED else 1
    finally:
        channel.close()

    parser.error(f"unknown command {args.command!r}")
    return 2  # pragma: no cover


if __name__ == "__main__":
    raise SystemExit(main())  # pragma: no cover
