#!/usr/bin/env python3
"""
Home Monitor: keeps servers powered according to the machines that need them

Usage:
    home-monitor                                # Run the monitor (default)
    home-monitor -c ./home-monitor.json run     # Use another configuration file
    home-monitor --no-web                       # Run without the HTTP API
    home-monitor wakeup srv1 [srv2 ...]         # Send wake-on-lan now and exit
    home-monitor shutdown srv1 [srv2 ...]       # Shut servers down now and exit

Every tick the devices are pinged, each server's desired state is computed
from the reachability of its dependencies and its override flags, and a
wake-on-lan packet or an SSH shutdown is sent where the server disagrees.

Exit codes: 0 ok, 64 usage error, 69 a targeted server failed, 78 bad configuration.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from config import Configuration, load_config
from constants import CONFIG_LOCATION, EXIT_CONFIG, EXIT_OK, EXIT_UNAVAILABLE, EXIT_USAGE
from device_state import PowerState
from errors import ConfigError, HomeMonitorError
from home_monitor import HomeMonitor
from logger import setup_logging

logger = logging.getLogger("main")

COMMANDS = ("run", "wakeup", "shutdown")


class _ArgumentParser(argparse.ArgumentParser):
    """argparse exits with 2 on usage errors; sysexits wants EX_USAGE."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="home-monitor",
        description="Wake up and shut down servers following the machines that depend on them")
    parser.add_argument("-c", "--config", type=str, default=CONFIG_LOCATION,
                        help=f"Configuration file (default {CONFIG_LOCATION})")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Log warnings and errors only")
    parser.add_argument("--no-web", action="store_true",
                        help="Do not start the HTTP API even if configured")
    parser.add_argument("command", nargs="?", choices=COMMANDS, default="run",
                        help="run (default), wakeup or shutdown")
    parser.add_argument("ids", nargs="*", help="Server ids for wakeup/shutdown")
    return parser


def main(argv: Optional[list] = None) -> int:
    """Entry point: parse arguments, load configuration, dispatch the command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "run" and args.ids:
        parser.error("run takes no server ids")
    if args.command != "run" and not args.ids:
        parser.error(f"{args.command} needs at least one server id")

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"{parser.prog}: {e}", file=sys.stderr)
        return EXIT_CONFIG

    if args.verbose:
        level = "DEBUG"
    elif args.quiet:
        level = "WARNING"
    else:
        level = config.logging.level
    setup_logging(level, config.logging.file)

    try:
        monitor = HomeMonitor(config)
    except ConfigError as e:
        logger.error("%s", e)
        return EXIT_CONFIG

    if args.command == "run":
        return asyncio.run(_run_service(monitor, config, web=not args.no_web))
    want = PowerState.ON if args.command == "wakeup" else PowerState.OFF
    return asyncio.run(_run_actions(monitor, args.command, want, args.ids))


async def _run_actions(monitor: HomeMonitor, command: str, want: PowerState,
                       ids: list) -> int:
    """Run one manual action per server concurrently and report each outcome."""
    ids = list(dict.fromkeys(ids))
    results = await asyncio.gather(
        *(monitor.dispatcher.execute(server_id, want) for server_id in ids),
        return_exceptions=True)

    failed = 0
    for server_id, result in zip(ids, results):
        if isinstance(result, HomeMonitorError):
            failed += 1
            kind = getattr(result, "kind", "error")
            print(f"{server_id}: {command} failed [{kind}]: {result}", file=sys.stderr)
        elif isinstance(result, BaseException):
            raise result
        else:
            print(f"{server_id}: {command} sent")
    return EXIT_UNAVAILABLE if failed else EXIT_OK


async def _run_service(monitor: HomeMonitor, config: Configuration, web: bool = True) -> int:
    """Run the reconciliation loop (and the web API) until SIGINT/SIGTERM."""
    server = None
    web_config = config.api.web
    if web and web_config is not None and web_config.enabled:
        import web_server
        web_server.set_monitor(monitor)
        server = web_server.create_server(str(web_config.ip), web_config.port,
                                          config.logging.level)
        logger.info("API:       http://%s:%d/api/v1/status", web_config.ip, web_config.port)
        logger.info("WebSocket: ws://%s:%d/ws", web_config.ip, web_config.port)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, monitor.stop)

    async def run_monitor():
        try:
            await monitor.run()
        finally:
            # Actions are drained by now; let uvicorn go too
            if server is not None:
                server.should_exit = True

    async def run_web():
        try:
            await server.serve()
        finally:
            monitor.stop()

    try:
        tasks = [asyncio.create_task(run_monitor(), name="monitor")]
        if server is not None:
            tasks.append(asyncio.create_task(run_web(), name="web"))
        await asyncio.gather(*tasks)
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
