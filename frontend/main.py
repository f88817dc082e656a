"""Front-end entrypoint relaying newline-JSON requests from stdin to the backend.

Each stdin line is ``{"id", "method", "params"}``; each stdout line is the
matching ``{"id", "result"}`` or ``{"id", "error": {"message"}}``. Requests
run concurrently and answers are written as they complete.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Set

from mapbridge.errors import FatalStartupError, MapBridgeError
from mapbridge.interfaces.line_codec import LineDecoder, Response, encode_frame
from mapbridge.settings import Settings
from mapbridge.utils.logger import setup_logging

from .services.backend_client import ConnectionSupervisor
from .services.backend_launcher import BackendLauncher

_logger = logging.getLogger("frontend")


class StdioRelay:
    def __init__(self, supervisor: ConnectionSupervisor, writer: Any) -> None:
        self.supervisor = supervisor
        self.writer = writer
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, message: Dict[str, Any]) -> None:
        task = asyncio.ensure_future(self._relay(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _relay(self, message: Dict[str, Any]) -> None:
        request_id = str(message.get("id") or "")
        method = message.get("method")
        if not isinstance(method, str) or not method:
            self._emit(Response(id=request_id, error="Request is missing a method"))
            return
        params = message.get("params") if isinstance(message.get("params"), dict) else {}
        try:
            result = await self.supervisor.send(method, params)
        except MapBridgeError as exc:
            self._emit(Response(id=request_id, error=str(exc)))
            return
        self._emit(Response(id=request_id, result=result))

    def _emit(self, response: Response) -> None:
        self.writer.write(encode_frame(response.to_wire()))
        self.writer.flush()

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def preconnect(supervisor: ConnectionSupervisor, stop_event: asyncio.Event) -> bool:
    """Connect before the first request; a fatal startup ends the relay."""
    try:
        await supervisor.ensure_connected()
    except FatalStartupError as exc:
        _logger.error("Backend startup is fatal, exiting: %s", exc)
        stop_event.set()
        return False
    except MapBridgeError as exc:
        _logger.warning("Pre-connection failed, will retry on demand: %s", exc)
        return False
    _logger.info("Pre-connected to backend")
    return True


async def run(root: Path) -> int:
    settings = Settings.load(root)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def fatal_exit(code: int) -> None:
        _logger.info("Backend refused to start (exit code %s); exiting", code)
        stop_event.set()

    launcher = BackendLauncher(root, on_fatal_exit=fatal_exit, grace=settings.ipc.shutdown_grace)
    supervisor = ConnectionSupervisor.from_settings(settings.ipc, launcher=launcher)
    relay = StdioRelay(supervisor, sys.stdout.buffer)

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            signal.signal(signum, lambda *_: loop.call_soon_threadsafe(stop_event.set))

    await preconnect(supervisor, stop_event)

    async def pump() -> None:
        reader = await _stdin_reader()
        decoder = LineDecoder()
        while True:
            chunk = await reader.read(65536)
            if not chunk:
                _logger.info("stdin closed; shutting down")
                return
            for message in decoder.feed(chunk):
                relay.dispatch(message)

    pump_task = asyncio.ensure_future(pump())
    stop_task = asyncio.ensure_future(stop_event.wait())
    try:
        await asyncio.wait({pump_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (pump_task, stop_task):
            task.cancel()
        await asyncio.gather(pump_task, stop_task, return_exceptions=True)
        await supervisor.shutdown()
        await relay.drain()
    return 0


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Map-generation front-end relay")
    parser.add_argument("--root", type=Path, default=Path.cwd(),
                        help="Project root directory containing the config folder")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.root / "logs")
    return asyncio.run(run(args.root))


if __name__ == "__main__":  # pragma: no cover - manual execution
    sys.exit(main())
