#!/usr/bin/env python3
"""
Kiro Bridge CLI
===============

Command-line entry point for the bridge.

Examples:
    # Serve on the configured port, asking what to do on a port conflict
    kiro-bridge serve

    # Serve on another port, failing over to the next free port if taken
    kiro-bridge serve --port 3100 --on-conflict failover

    # Who holds a port?
    kiro-bridge port-check 3001

    # List workspaces and wipe those left behind by a crashed session
    kiro-bridge workspaces --reclaim
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from kiro_bridge.core.config import load_settings
from kiro_bridge.core.errors import BridgeError, PortConflictError
from kiro_bridge.core.logging_config import setup_logging
from kiro_bridge.core.port_utils import get_process_using_port, is_port_available
from kiro_bridge.core.process_utils import IS_WINDOWS
from kiro_bridge.core.workspace_manager import WorkspaceManager
from kiro_bridge.server.bootstrap import ConflictChoice, activate, deactivate

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

_CONFLICT_FLAGS = {
    "force": ConflictChoice.FORCE_RESTART,
    "failover": ConflictChoice.FAILOVER,
    "abort": ConflictChoice.ABORT,
}


# ============================================================================
# Port conflict prompt
# ============================================================================

def ask_operator(error: PortConflictError) -> ConflictChoice:
    """Interactive resolver used by ``serve --on-conflict ask``."""
    print()
    print(f"  {error.message}")
    print()
    print("  [r] Force restart (terminate the process holding the port)")
    print("  [f] Fail over to the next free port")
    print("  [a] Abort")
    while True:
        try:
            answer = input("  Choice [r/f/a]: ").strip().lower()
        except EOFError:
            return ConflictChoice.ABORT
        if answer in ("r", "restart", "force"):
            return ConflictChoice.FORCE_RESTART
        if answer in ("f", "failover"):
            return ConflictChoice.FAILOVER
        if answer in ("a", "abort", ""):
            return ConflictChoice.ABORT


def _resolver_for(flag: str):
    if flag == "ask":
        if not sys.stdin.isatty():
            return None
        return lambda error: asyncio.to_thread(ask_operator, error)
    choice = _CONFLICT_FLAGS[flag]
    return lambda error: choice


# ============================================================================
# Commands
# ============================================================================

async def _serve(settings, resolve) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    if not IS_WINDOWS:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)

    context = await activate(settings, resolve=resolve)
    try:
        server = context.api_server
        if server is not None and server.is_running:
            print(f"Kiro bridge listening on http://{server.host}:{server.port}  (Ctrl+C to stop)")
            waiter = asyncio.create_task(server.wait())
            stopper = asyncio.create_task(stop.wait())
            await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            waiter.cancel()
            stopper.cancel()
        else:
            print("Kiro bridge initialized (auto_start disabled; API server not started)")
            await stop.wait()
    finally:
        await deactivate(context)
    return EXIT_INTERRUPTED if stop.is_set() else EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    settings = load_settings(api_host=args.host, api_port=args.port)
    setup_logging(settings.log_dir, console_level=settings.log_level)
    logger.debug("Effective settings: %s", {k: v for k, v in settings.to_dict().items() if k != "api_key"})
    return asyncio.run(_serve(settings, _resolver_for(args.on_conflict)))


def cmd_port_check(args: argparse.Namespace) -> int:
    setup_logging(None, console_level="warn")
    available = asyncio.run(is_port_available(args.port, args.host))
    if available:
        print(f"Port {args.port} on {args.host} is available")
        return EXIT_OK
    owner = get_process_using_port(args.port, args.host)
    holder = owner.describe() if owner else "an unknown process"
    print(f"Port {args.port} on {args.host} is in use by {holder}")
    return EXIT_ERROR


def cmd_workspaces(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_logging(None, console_level=settings.log_level)
    manager = WorkspaceManager(settings.workspace_root)
    manager.initialize()

    if args.reclaim:
        count = manager.reclaim_stale_workspaces()
        print(f"Reclaimed {count} stale workspace(s)")

    stale = {ws.path for ws in manager.find_stale_workspaces()}
    rows = list(manager.list_workspaces())
    if not rows:
        print(f"No workspaces under {manager.root}")
        return EXIT_OK
    for ws in rows:
        tag = "stale" if ws.path in stale else f"pid {ws.pid}"
        print(f"{ws.application_id:<30} {tag:<12} {ws.path}")
    return EXIT_OK


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiro-bridge",
        description="Local orchestration bridge between the desktop frontend and the Kiro coding agent",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Activate the bridge and serve the HTTP API")
    serve.add_argument("--host", default=None, help="Bind address (default: settings api_host)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: settings api_port)")
    serve.add_argument(
        "--on-conflict",
        choices=("ask", "force", "failover", "abort"),
        default="ask",
        help="What to do when the port is already in use (default: ask)",
    )
    serve.set_defaults(func=cmd_serve)

    port_check = sub.add_parser("port-check", help="Check whether a port is free and who holds it")
    port_check.add_argument("port", type=int)
    port_check.add_argument("--host", default="127.0.0.1")
    port_check.set_defaults(func=cmd_port_check)

    workspaces = sub.add_parser("workspaces", help="List application workspaces")
    workspaces.add_argument("--reclaim", action="store_true", help="Wipe workspaces left behind by dead sessions")
    workspaces.set_defaults(func=cmd_workspaces)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except BridgeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        if isinstance(e, PortConflictError):
            print(e.remediation, file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
