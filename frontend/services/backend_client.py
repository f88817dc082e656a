"""Front-end connection supervisor for the backend IPC channel.

One TCP connection to the fixed loopback address carries every request.
Requests are correlated by id, so responses may arrive in any order; when the
connection drops every pending request is rejected exactly once and the next
``send`` reconnects (spawning the backend when nothing answers).
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from mapbridge.core.backoff import BackoffPolicy
from mapbridge.errors import (
    BackendConnectionError,
    BackendRequestError,
    ConnectionLostError,
    FatalStartupError,
    ProtocolError,
)
from mapbridge.interfaces.line_codec import (
    LineDecoder,
    Request,
    encode_frame,
    new_request_id,
    parse_response,
)
from mapbridge.settings import IpcSettings

from .backend_launcher import BackendLauncher


@dataclass
class PendingRequest:
    id: str
    future: asyncio.Future
    method: str
    issued_at: float


class ConnectionSupervisor:
    def __init__(self, *, host: str, port: int, policy: BackoffPolicy,
                 launcher: Optional[BackendLauncher] = None,
                 connect_timeout: float = 2.0,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.host = host
        self.port = port
        self.policy = policy
        self.launcher = launcher
        self.connect_timeout = connect_timeout
        self._sleep = sleep
        self._logger = logger or logging.getLogger("frontend.backend_client")
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._read_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, PendingRequest] = {}
        self._connect_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: IpcSettings, *,
                      launcher: Optional[BackendLauncher] = None) -> "ConnectionSupervisor":
        return cls(host=settings.host, port=settings.port, policy=settings.backoff(), launcher=launcher)

    # Connection ------------------------------------------------------------------
    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def ensure_connected(self) -> None:
        """Return with a usable channel or raise :class:`BackendConnectionError`."""
        async with self._connect_lock:
            if self.connected:
                return
            if self._closed:
                raise BackendConnectionError("Connection supervisor has been shut down")
            self._logger.info("Connecting to backend at %s:%s", self.host, self.port)
            try:
                await self._open()
                return
            except OSError as exc:
                last_error: BaseException = exc
                self._logger.info("Backend not reachable (%s)", exc)

            if self.launcher is not None:
                try:
                    await self.launcher.start()
                except OSError as exc:
                    raise BackendConnectionError(f"Unable to start backend: {exc}") from exc

            for attempt in range(self.policy.max_attempts):
                delay = self.policy.delay(attempt)
                await self._sleep(delay)
                if self.launcher is not None and self.launcher.exited_cleanly:
                    raise FatalStartupError("Backend exited cleanly during startup")
                try:
                    await self._open()
                    self._logger.info("Connected to backend after %d retries", attempt + 1)
                    return
                except OSError as exc:
                    last_error = exc
                    self._logger.debug("Retry %d/%d failed after %.2fs: %s",
                                       attempt + 1, self.policy.max_attempts, delay, exc)
            raise BackendConnectionError(
                f"Unable to connect to backend after {self.policy.max_attempts} attempts: {last_error}"
            ) from last_error

    async def _open(self) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout)
        except asyncio.TimeoutError as exc:
            raise ConnectionRefusedError(f"connect to {self.host}:{self.port} timed out") from exc
        self._reader, self._writer = reader, writer
        self._read_task = asyncio.ensure_future(self._read_loop(reader, writer))
        self._logger.info("Connected to backend")

    async def _read_loop(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        decoder = LineDecoder()
        cause: Optional[BaseException] = None
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break
                for message in decoder.feed(chunk):
                    self._handle_message(message)
        except asyncio.CancelledError:
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            cause = exc
        self._connection_lost(writer, cause)

    def _handle_message(self, message: Dict[str, Any]) -> None:
        try:
            response = parse_response(message)
        except ProtocolError as exc:
            self._logger.warning("Dropping invalid response: %s", exc)
            return
        pending = self._pending.pop(response.id, None)
        if pending is None:
            self._logger.debug("No pending request for response id %s", response.id)
            return
        if pending.future.done():
            return
        if response.ok:
            pending.future.set_result(response.result)
        else:
            pending.future.set_exception(BackendRequestError(response.error or "backend error"))

    def _connection_lost(self, writer: asyncio.StreamWriter, cause: Optional[BaseException]) -> None:
        if writer is not self._writer:
            return
        self._logger.warning("Backend disconnected%s", f": {cause}" if cause else "")
        self._reader = None
        self._writer = None
        self._read_task = None
        writer.close()
        self.reject_all(ConnectionLostError("Backend disconnected"))

    def reject_all(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.future.done():
                entry.future.set_exception(exc)

    # Requests --------------------------------------------------------------------
    async def send(self, method: str, params: Optional[Dict[str, Any]] = None, *,
                   timeout: Optional[float] = None) -> Any:
        """Issue one request; resolves or rejects exactly once."""
        await self.ensure_connected()
        writer = self._writer
        if writer is None:
            raise ConnectionLostError(f"Backend connection closed before sending {method}")
        request = Request(id=new_request_id(), method=method, params=params or {})
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request.id] = PendingRequest(request.id, future, method, time.monotonic())
        try:
            writer.write(encode_frame(request.to_wire()))
            await writer.drain()
        except (OSError, RuntimeError) as exc:
            self._connection_lost(writer, exc)
            if not future.done():
                future.set_exception(ConnectionLostError(f"Failed to send {method}: {exc}"))
        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request.id, None)

    # Lifecycle -------------------------------------------------------------------
    async def shutdown(self) -> None:
        """Close the channel, stop the backend, and fail pending requests (idempotent)."""
        if self._closed:
            return
        self._closed = True
        writer, self._writer = self._writer, None
        read_task, self._read_task = self._read_task, None
        self._reader = None
        if read_task is not None:
            read_task.cancel()
            await asyncio.gather(read_task, return_exceptions=True)
        if writer is not None:
            writer.close()
        self.reject_all(ConnectionLostError("Connection supervisor shut down"))
        if self.launcher is not None:
            await self.launcher.stop()
        self._logger.info("Connection supervisor shut down")


__all__ = ["ConnectionSupervisor", "PendingRequest"]
