"""
Entry point for `python -m rally_client`.

Usage:
    python -m rally_client server [--host 0.0.0.0] [--port 8787]
    python -m rally_client client [--url ws://localhost:8787/ws] [--room ABC123]
                                  [--add Speed:32 ...] [--start-rally Speed]
                                  [--select Speed ...]
"""

import asyncio
import argparse
import logging
import signal
import sys

from .client import RallyClient
from .display import render_timeline, sync_label
from .server import RallyServer
from .settings import RALLY_MINUTE_CHOICES, get_local_settings

logger = logging.getLogger("RallyClient")


def parse_player(value: str) -> tuple[str, int]:
    """NAME:SECONDS -> (name, march ms)."""
    name, sep, seconds = value.rpartition(":")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected NAME:SECONDS, got {value!r}")
    try:
        march_ms = round(float(seconds) * 1000)
    except (ValueError, OverflowError):
        raise argparse.ArgumentTypeError(f"bad march seconds in {value!r}") from None
    if march_ms <= 0:
        raise argparse.ArgumentTypeError(f"march must be positive in {value!r}")
    return name.strip(), march_ms


def select_players(settings, state, names) -> list[str]:
    """Mark the named roster players as selected for call-outs.

    Returns the names that matched no player.
    """
    missing = []
    for name in names:
        matches = [p for p in state.players if p.name == name]
        if not matches:
            missing.append(name)
        for player in matches:
            if player.id not in settings.selected_ids:
                settings.toggle_selected(player.id)
    return missing


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Rally Sync - synchronized rally countdowns")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    srv = sub.add_parser("server", help="Run the in-memory room server")
    srv.add_argument("--host", default="0.0.0.0")
    srv.add_argument("--port", "-p", type=int, default=8787)

    cli = sub.add_parser("client", help="Join a room and show the rally countdown")
    cli.add_argument("--url", "-u", default="ws://localhost:8787/ws")
    cli.add_argument("--room", "-r", default="local")
    cli.add_argument("--settings", default=None, help="Local settings file")
    cli.add_argument("--rally-minutes", type=int, choices=RALLY_MINUTE_CHOICES, default=None)
    cli.add_argument("--pre-delay", type=int, default=None, help="Seconds before the rally starts")
    cli.add_argument("--add", action="append", type=parse_player, default=[], metavar="NAME:SECONDS")
    cli.add_argument("--start-rally", default=None, metavar="NAME", help="Start a rally with this starter")
    cli.add_argument("--select", action="append", default=[], metavar="NAME",
                     help="Only call out these players (repeatable)")
    cli.add_argument("--every", type=float, default=1.0, help="Display refresh (seconds)")
    return parser.parse_args(argv)


async def _wait_for_shutdown() -> None:
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)
    await shutdown.wait()


async def cancel_and_wait(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


async def run_server(args) -> int:
    server = RallyServer()
    await server.start(args.host, args.port)
    try:
        await _wait_for_shutdown()
    finally:
        await server.stop()
    return 0


async def run_client(args) -> int:
    settings = await get_local_settings(args.settings)
    settings.update(rally_minutes=args.rally_minutes, pre_delay_seconds=args.pre_delay)

    first_state = asyncio.Event()
    client = RallyClient(url=args.url, room_id=args.room, settings=settings,
                         on_state=lambda _: first_state.set())

    print(f"URL:  {args.url}")
    print(f"Room: {args.room}\n")

    try:
        if not await client.connect():
            print("Connection failed")
            return 1

        try:
            await asyncio.wait_for(first_state.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("No room state received yet")
        for name, march_ms in args.add:
            await client.add_player(name, march_ms)

        if args.start_rally:
            for _ in range(25):
                starter = next((p for p in client.state.players if p.name == args.start_rally), None)
                if starter:
                    await client.start_rally(starter.id)
                    break
                await asyncio.sleep(0.2)
            else:
                logger.error(f"Starter {args.start_rally!r} not in room")

        if args.select:
            for name in select_players(settings, client.state, args.select):
                logger.warning(f"Cannot select {name!r}: not in room")

        async def printer():
            while True:
                await asyncio.sleep(args.every)
                print(f"\n[{sync_label(client.clock_synced)}] offset={client.clock_offset:.0f}ms")
                print(render_timeline(client.timeline))

        task = asyncio.create_task(printer())
        await _wait_for_shutdown()
        await cancel_and_wait(task)
    finally:
        await client.close()
        await settings.flush()

    return 0


async def run(argv=None) -> int:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    if args.command == "server":
        return await run_server(args)
    return await run_client(args)


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
