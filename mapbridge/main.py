"""CLI entrypoint for the map-generation backend."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from .core.runtime import BackendRuntime
from .settings import Settings

_logger = logging.getLogger("entrypoint")

# Exit code telling the front-end that another backend already owns the
# control port; it must not respawn.
EXIT_ALREADY_RUNNING = 0


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    def handler(signum: int) -> None:
        _logger.info("Received signal %s, shutting down", signum)
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handler, signum)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(signum, lambda received, _frame: loop.call_soon_threadsafe(handler, received))


async def run(runtime: BackendRuntime, stop_event: Optional[asyncio.Event] = None) -> int:
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(asyncio.get_running_loop(), stop_event)
    try:
        await runtime.start()
    except OSError as exc:
        _logger.warning("Control port %s:%s unavailable (%s); another backend is running",
                        runtime.settings.ipc.host, runtime.settings.ipc.port, exc)
        return EXIT_ALREADY_RUNNING
    _logger.info("Backend started on %s:%s", runtime.settings.ipc.host, runtime.ipc.bound_port)
    try:
        await stop_event.wait()
    finally:
        await runtime.stop()
        _logger.info("Backend stopped")
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Map-generation backend")
    parser.add_argument("--root", type=Path, default=Path.cwd(),
                        help="Project root directory containing the config folder")
    parser.add_argument("--port", type=int, default=None,
                        help="Override the control port from config")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.load(args.root)
    if args.port is not None:
        settings = replace(settings, ipc=replace(settings.ipc, port=args.port))
    runtime = BackendRuntime(settings, root=args.root, log_root=args.root / "logs")
    return asyncio.run(run(runtime))


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
