"""Command-line entry point (``python -m guestvm``)."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from guestvm import __version__
from guestvm.core.capabilities import capability_matrix
from guestvm.core.context import AppContext, create_app_context
from guestvm.core.errors import GuestVMError
from guestvm.core.logging_config import attach_component_log, configure_logging
from guestvm.core.logging_utils import get_module_logger
from guestvm.core.models import RuntimeKind, RuntimeStatus, parse_runtime_kind
from guestvm.core.paths import AppPaths
from guestvm.core.runtimes import ComposeDirection, probe_host

logger = get_module_logger("CLI")

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")
LIFECYCLE_COMMANDS = ("start", "stop", "restart", "pause", "unpause")


def _runtime_kind_arg(value: str) -> RuntimeKind:
    kind = parse_runtime_kind(value)
    if kind is None:
        choices = ", ".join(k.value for k in RuntimeKind)
        raise argparse.ArgumentTypeError(f"Unknown runtime '{value}'. Choose from: {choices}")
    return kind


def _config_assignment(value: str) -> tuple[str, Any]:
    key, sep, raw = value.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{value}'")
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = raw
    return key.strip(), parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="guestvm", description="Manage the guest OS instance")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="warning",
        help="Logging verbosity (default: warning; watch always logs at info or lower)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Rotating log file (default: <app dir>/logs/guestvm.log)",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show the instance state and active port mappings")
    for name in LIFECYCLE_COMMANDS:
        sub.add_parser(name, help=f"{name.capitalize()} the instance")

    up = sub.add_parser("up", help="Create the instance from its descriptor")
    up.add_argument("--no-start", action="store_true", help="Create without starting")
    sub.add_parser("down", help="Tear the instance down")
    sub.add_parser("ports", help="Query and print the resolved port mappings")
    sub.add_parser("capabilities", help="Print the capability matrix for this host")

    probe = sub.add_parser("probe", help="Check the host tooling for a runtime")
    probe.add_argument("runtime", nargs="?", type=_runtime_kind_arg, default=None)

    config = sub.add_parser("config", help="Print or modify the persisted config")
    config.add_argument(
        "--set",
        dest="assignments",
        action="append",
        type=_config_assignment,
        default=[],
        metavar="KEY=VALUE",
        help="Set a top-level key (VALUE is parsed as JSON when possible)",
    )

    sub.add_parser("watch", help="Supervise the instance until interrupted")
    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _cmd_status(ctx: AppContext, args: argparse.Namespace) -> int:
    status = await ctx.runtime.status()
    print(f"{ctx.runtime.kind}: {status}")
    if status is RuntimeStatus.RUNNING:
        for binding in await ctx.runtime.port():
            print(f"  {binding}")
    return 0


async def _cmd_lifecycle(ctx: AppContext, args: argparse.Namespace) -> int:
    supervisor = ctx.create_supervisor()
    try:
        status = await getattr(supervisor, args.command)()
    finally:
        await supervisor.stop_monitoring()
    print(f"{ctx.runtime.kind}: {status}")
    return 0


async def _cmd_up(ctx: AppContext, args: argparse.Namespace) -> int:
    supervisor = ctx.create_supervisor()
    extra = ["--no-start"] if args.no_start else []
    try:
        status = await supervisor.apply(ComposeDirection.UP, extra)
    finally:
        await supervisor.stop_monitoring()
    print(f"{ctx.runtime.kind}: {status}")
    return 0


async def _cmd_down(ctx: AppContext, args: argparse.Namespace) -> int:
    supervisor = ctx.create_supervisor()
    try:
        status = await supervisor.apply(ComposeDirection.DOWN)
    finally:
        await supervisor.stop_monitoring()
    print(f"{ctx.runtime.kind}: {status}")
    return 0


async def _cmd_ports(ctx: AppContext, args: argparse.Namespace) -> int:
    bindings = await ctx.runtime.port()
    if not bindings:
        print("No active port mappings")
        return 1
    for binding in bindings:
        print(binding)
    return 0


async def _cmd_capabilities(ctx: AppContext, args: argparse.Namespace) -> int:
    matrix = capability_matrix(ctx.host, ctx.flags)
    _print_json({kind.value: caps.to_dict() for kind, caps in matrix.items()})
    return 0


async def _cmd_probe(ctx: AppContext, args: argparse.Namespace) -> int:
    kind = args.runtime or ctx.runtime.kind
    probe = await probe_host(kind)
    _print_json({"runtime": kind.value, "ready": probe.ready, **probe.to_dict()})
    return 0 if probe.ready else 1


async def _cmd_config(ctx: AppContext, args: argparse.Namespace) -> int:
    if args.assignments:
        def mutate(config: Dict[str, Any]) -> None:
            for key, value in args.assignments:
                config[key] = value

        await ctx.config.update_async(mutate)
    _print_json(ctx.config.config)
    return 0


async def _cmd_watch(ctx: AppContext, args: argparse.Namespace) -> int:
    supervisor = ctx.create_supervisor()
    await supervisor.migrate_descriptor_ports()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass  # Windows doesn't support add_signal_handler

    logger.info("Supervising %s instance, press Ctrl+C to stop", ctx.runtime.kind)
    supervisor.start_monitoring()
    try:
        await stop_event.wait()
    finally:
        await supervisor.stop_monitoring()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, ValueError):
                loop.remove_signal_handler(sig)
    logger.info("Supervisor stopped")
    return 0


COMMANDS: Dict[str, Callable[[AppContext, argparse.Namespace], Any]] = {
    "status": _cmd_status,
    "up": _cmd_up,
    "down": _cmd_down,
    "ports": _cmd_ports,
    "capabilities": _cmd_capabilities,
    "probe": _cmd_probe,
    "config": _cmd_config,
    "watch": _cmd_watch,
    **{name: _cmd_lifecycle for name in LIFECYCLE_COMMANDS},
}


def setup_logging(args: argparse.Namespace, paths: AppPaths) -> None:
    level = args.log_level
    if args.command == "watch" and LOG_LEVELS.index(level) < LOG_LEVELS.index("info"):
        level = "info"
    configure_logging(
        level,
        force=True,
        log_file=args.log_file or paths.app_log_file,
        suppressed_loggers=("asyncio",),
    )
    # migration events also go to their own file, whatever the console level
    attach_component_log("guestvm.ConfigMigration", paths.migrations_log_file)


async def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    paths = AppPaths.from_environment().ensure()
    setup_logging(args, paths)

    ctx = create_app_context()
    handler = COMMANDS[args.command]
    try:
        return await handler(ctx, args)
    except GuestVMError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def run(argv: Optional[list[str]] = None) -> int:
    try:
        return asyncio.run(main(argv))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 130


__all__ = ["build_parser", "main", "run"]
