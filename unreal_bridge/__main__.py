"""
Unreal bridge probe.

Connects to a running editor, prints a health report as JSON and exits.
Optionally runs a console command or a Python script first.
"""

import argparse
import asyncio
import json
import logging
import sys

from .bridge import UnrealBridge
from .config import get_settings
from .safety import get_safe_command, get_safe_command_names


def list_safe_commands() -> int:
    print(json.dumps({name: get_safe_command(name) for name in get_safe_command_names()}, indent=2))
    return 0


async def probe(args: argparse.Namespace) -> int:
    bridge = UnrealBridge(get_settings())
    try:
        if not await bridge.try_connect(max_attempts=args.attempts, timeout=args.timeout):
            print(json.dumps({"success": False, "error": "Could not connect to Unreal Engine"}, indent=2))
            return 1

        output = {}
        if args.command:
            output["console"] = (await bridge.execute_console_command(args.command)).to_dict()
        if args.python:
            output["python"] = (await bridge.execute_python(args.python)).to_dict()
        output["health"] = await bridge.health.snapshot()

        print(json.dumps(output, indent=2, default=str))
        return 0
    finally:
        await bridge.close()


def main():
    parser = argparse.ArgumentParser(description="Unreal Engine Remote Control bridge probe")
    parser.add_argument("--attempts", type=int, default=3, help="Connection attempts")
    parser.add_argument("--timeout", type=float, default=5.0, help="Connect timeout in seconds")
    parser.add_argument("--command", help="Console command to run")
    parser.add_argument("--python", help="Python script to run")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--list-safe-commands", action="store_true", help="Print the named safe console commands and exit")
    args = parser.parse_args()

    if args.list_safe_commands:
        sys.exit(list_safe_commands())

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    # Suppress websocket ping/pong and per-request HTTP logs
    logging.getLogger("websockets.client").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    sys.exit(asyncio.run(probe(args)))


if __name__ == "__main__":
    main()
