"""qmlrun command line.

Usage:
    python -m qmlrun [--host HOST] search [--timeout S] [--max-count N]
    python -m qmlrun [--host HOST] run PATH_OR_URL [--entry-point NAME] [--wait]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from qmlrun.config import RunnerConfig
from qmlrun.discovery import discover
from qmlrun.errors import QMLRunError
from qmlrun.runner import run

logger = logging.getLogger("qmlrun")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qmlrun", description="Run QML applications on a developer-mode device"
    )
    parser.add_argument("--host", default=None, help="Device address (skips discovery)")
    parser.add_argument("--config", "-c", default=None, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p_search = sub.add_parser("search", help="List devices on the local network")
    p_search.add_argument("--timeout", type=float, default=None, help="Seconds to browse")
    p_search.add_argument(
        "--max-count", type=int, default=0, help="Stop after N devices (0: no limit)"
    )

    p_run = sub.add_parser("run", help="Run a QML application")
    p_run.add_argument("program", help="Application directory, manifest.json or URL")
    p_run.add_argument("--entry-point", default=None, help="Entry point to start")
    p_run.add_argument(
        "--wait", action="store_true", default=None,
        help="Ask the device to wait before starting the application",
    )
    p_run.add_argument("--search-timeout", type=float, default=None)
    return parser


async def _search(config: RunnerConfig, args: argparse.Namespace) -> int:
    records = await discover(args.timeout or config.search_timeout, args.max_count)
    if not records:
        print("No device found", file=sys.stderr)
        return 1
    for record in records:
        via = f" (via {record.interface_address})" if record.interface_address else ""
        print(f"{record.address}{via}")
    return 0


async def _run(config: RunnerConfig, args: argparse.Namespace) -> int:
    options = config.to_options()
    if args.entry_point:
        options.entry_point = args.entry_point
    if args.wait is not None:
        options.wait = args.wait
    if args.search_timeout is not None:
        options.search_timeout = args.search_timeout

    session = await run(args.program, options)
    session.on("stdout", lambda chunk: _write(sys.stdout, chunk))
    session.on("stderr", lambda chunk: _write(sys.stderr, chunk))

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, closing session", sig)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _shutdown, sig)
        except NotImplementedError:
            pass

    ended = asyncio.ensure_future(session.wait_closed())
    stopped = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({ended, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        ended.cancel()
        stopped.cancel()
        await session.close()
    return 0


def _write(stream, chunk: bytes) -> None:
    stream.buffer.write(chunk)
    stream.flush()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = RunnerConfig.load(args.config)
    if args.host:
        config.host = args.host

    handler = _search if args.command == "search" else _run
    try:
        return asyncio.run(handler(config, args))
    except QMLRunError as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
