"""Loopback IPC server answering newline-JSON requests from the front-end."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..core.event_bus import EventBus
from ..errors import MapBridgeError, ProtocolError
from .base import BaseInterface
from .line_codec import LineDecoder, Response, encode_frame, parse_request

MethodHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class IpcServer(BaseInterface):
    """Serves the fixed local address and dispatches requests by method name.

    Binding the address is what makes a backend instance exclusive: a second
    backend fails in :meth:`start` with :class:`OSError`.
    """

    def __init__(self, name: str, bus: EventBus, *, host: str, port: int,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(name, bus, logger=logger or logging.getLogger("ipc.server"))
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None
        self._handlers: Dict[str, MethodHandler] = {}
        self._connections: Set[asyncio.StreamWriter] = set()
        self._tasks: Set[asyncio.Task] = set()

    def register(self, method: str, handler: MethodHandler) -> None:
        self._handlers[method] = handler

    @property
    def methods(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def bound_port(self) -> int:
        if self._server is None or not self._server.sockets:
            return self.port
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        if self._running:
            return
        self._server = await asyncio.start_server(self._client_handler, self.host, self.port)
        self._running = True
        self.logger.info("IPC server listening on %s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        if not self._running:
            return
        self.logger.info("Stopping IPC server")
        if self._server is not None:
            self._server.close()
        for writer in list(self._connections):
            writer.close()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._server is not None:
            await self._server.wait_closed()
        self._server = None
        self._connections.clear()
        self._running = False

    async def _client_handler(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        self.logger.info("Front-end connected: %s", peer)
        self._connections.add(writer)
        decoder = LineDecoder()
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                for message in decoder.feed(chunk):
                    self._spawn(self._handle_message(message, writer))
        except (ConnectionError, asyncio.IncompleteReadError) as exc:
            self.logger.info("Front-end connection dropped: %s", exc)
        finally:
            self._connections.discard(writer)
            writer.close()
            self.logger.info("Front-end disconnected: %s", peer)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_message(self, message: Dict[str, Any], writer: asyncio.StreamWriter) -> None:
        try:
            request = parse_request(message)
        except ProtocolError as exc:
            self.logger.warning("Dropping invalid request: %s", exc)
            return
        handler = self._handlers.get(request.method)
        if handler is None:
            self.logger.warning("Unknown method %s", request.method)
            response = Response(id=request.id, error=f"Unknown method: {request.method}")
        else:
            self.logger.debug("Dispatching %s (%s)", request.method, request.id)
            try:
                result = await handler(request.params)
                response = Response(id=request.id, result=result)
            except MapBridgeError as exc:
                response = Response(id=request.id, error=str(exc))
            except Exception as exc:
                self.logger.exception("Handler for %s failed", request.method)
                response = Response(id=request.id, error=str(exc) or exc.__class__.__name__)
        await self._write(writer, response)

    async def _write(self, writer: asyncio.StreamWriter, response: Response) -> None:
        if writer.is_closing():
            self.logger.debug("Connection closed before response %s could be sent", response.id)
            return
        try:
            writer.write(encode_frame(response.to_wire()))
            await writer.drain()
        except ConnectionError as exc:
            self.logger.warning("Failed to send response %s: %s", response.id, exc)


__all__ = ["IpcServer", "MethodHandler"]
