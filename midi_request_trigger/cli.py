"""
Command-line interface for the MIDI request trigger.
"""

import argparse
import asyncio
import logging
import sys

from . import SERVICE_DESCRIPTION, SERVICE_NAME, __version__
from .config import Config, find_config, load_config
from .devices import list_midi_ports
from .logs import apply_log_config
from .router import MidiRouter
from .server import serve

logger = logging.getLogger(__name__)


def load(args: argparse.Namespace) -> Config:
    """Find and load the config, then apply flag overrides and logging."""
    config = load_config(find_config(args.config))

    if args.http_bind:
        config.http.bind_addr = args.http_bind
    if args.http_port:
        config.http.port = args.http_port

    apply_log_config(config.log)
    return config


def print_ports() -> None:
    """Print available MIDI input and output ports."""
    inputs, outputs = list_midi_ports()

    print("MIDI in ports")
    for i, port in enumerate(inputs, 1):
        print(f"  [{i}] {port}")
    print()
    print("MIDI out ports")
    for i, port in enumerate(outputs, 1):
        print(f"  [{i}] {port}")
    print()


def cmd_run(args: argparse.Namespace) -> int:
    """Run the configured routers and HTTP listener."""
    config = load(args)

    if not config.midi_routers:
        logger.warning("No routers configured, please configure one.")
        print_ports()
        return 0

    routers = [MidiRouter(router_config) for router_config in config.midi_routers]
    for router in routers:
        logger.info(
            "Router %s: %d note triggers, %d request triggers",
            router.name,
            len(router.config.note_triggers),
            len(router.config.request_triggers),
        )

    return asyncio.run(serve(routers, config.http))


def cmd_list_devices(args: argparse.Namespace) -> int:
    """List available MIDI devices."""
    print_ports()
    return 0


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog=SERVICE_NAME,
        description=SERVICE_DESCRIPTION,
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        metavar="FILE",
        help="Load configuration from FILE",
    )
    parser.add_argument("--http-bind", default=None, help="Bind address for http server")
    parser.add_argument("--http-port", type=int, default=0, help="Bind port for http server")
    parser.add_argument("-v", "--version", action="version", version=f"{SERVICE_NAME}: {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # run command (default)
    run_parser = subparsers.add_parser("run", help="Run the MIDI request trigger")
    run_parser.set_defaults(func=cmd_run)

    # list-devices command
    list_dev_parser = subparsers.add_parser(
        "list-devices",
        help="List available midi devices for use in configurations",
    )
    list_dev_parser.set_defaults(func=cmd_list_devices)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.func = cmd_run

    # Ensure unbuffered output
    sys.stdout.reconfigure(line_buffering=True)

    sys.exit(args.func(args))
