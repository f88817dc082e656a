"""Dual-transport bridge used by the remote visual client.

The bridge picks WebSocket or WebRTC per connection attempt, reconnects
with bounded exponential backoff after an unexpected close, and exposes one
send/receive surface for correlated queries, one-way events, and liveness
pings. What happens on a given event is up to the handlers registered with
:meth:`DualTransportBridge.on`; the bridge itself stays protocol-agnostic.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Awaitable, Callable, DefaultDict, Dict, List, Optional, Set

from ..constants import ConnectionState, MessageType, TransportKind
from ..core.backoff import BackoffPolicy
from ..errors import BridgeConnectionError, BridgeNotConnectedError, ProtocolError
from ..settings import BridgeSettings
from .envelope import (
    Envelope,
    EventEnvelope,
    PingEnvelope,
    QueryEnvelope,
    ResponseEnvelope,
    parse_envelope,
)
from .transports import Transport, build_transport

QueryHandler = Callable[[Dict[str, Any]], Any]
EventHandler = Callable[[Dict[str, Any]], Any]
TransportFactory = Callable[[TransportKind], Transport]


class DualTransportBridge:
    """Browser-side socket bridge supporting both WebSocket and WebRTC."""

    def __init__(self, settings: BridgeSettings, *, secure_context: bool = False,
                 transport_factory: Optional[TransportFactory] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 logger: Optional[logging.Logger] = None) -> None:
        self.settings = settings
        self.secure_context = secure_context
        self.logger = logger or logging.getLogger("bridge.client")
        self._transport_factory = transport_factory or self._default_transport
        self._sleep = sleep
        self._transport: Optional[Transport] = None
        self._state = ConnectionState.DISCONNECTED
        self._active_kind: Optional[TransportKind] = None
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._pong_waiters: Dict[str, asyncio.Future] = {}
        self._query_handlers: Dict[str, QueryHandler] = {}
        self._event_handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()
        self.backoff = BackoffPolicy(
            base=settings.reconnect_delay,
            factor=2.0,
            cap=settings.reconnect_cap,
            max_attempts=settings.reconnect_attempts,
        )

    # Registration ----------------------------------------------------------------
    def register_query(self, method: str, handler: QueryHandler) -> None:
        self._query_handlers[method] = handler

    def on(self, kind: str, handler: EventHandler) -> None:
        handlers = self._event_handlers[kind]
        if handler not in handlers:
            handlers.append(handler)

    def off(self, kind: str, handler: EventHandler) -> None:
        handlers = self._event_handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    # State -----------------------------------------------------------------------
    @property
    def state(self) -> ConnectionState:
        return self._state

    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    def determine_transport(self) -> TransportKind:
        configured = TransportKind(self.settings.connection_type or TransportKind.AUTO.value)
        if configured is not TransportKind.AUTO:
            return configured
        # The plain socket is unusable from a secure context; the encrypted
        # channel is unnecessary overhead for an insecure local one.
        kind = TransportKind.WEBRTC if self.secure_context else TransportKind.WEBSOCKET
        self.logger.info("Auto-detected connection type: %s (secure=%s)", kind.value, self.secure_context)
        return kind

    def connection_info(self) -> Dict[str, Any]:
        return {
            "type": self._active_kind.value if self._active_kind else None,
            "state": self._state.value,
            "reconnectAttempts": self._reconnect_attempts,
            "maxReconnectAttempts": self.settings.reconnect_attempts,
            "config": {
                "host": self.settings.host,
                "port": self.settings.port,
                "namespace": self.settings.namespace,
            },
        }

    # Lifecycle -------------------------------------------------------------------
    async def connect(self) -> None:
        """Connect, retrying with backoff until the attempt ceiling is reached."""
        if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return
        self._cancel_reconnect()
        self._reconnect_attempts = 0
        await self._connect_with_retry()

    async def _connect_with_retry(self) -> None:
        while True:
            try:
                await self._connect_once()
                return
            except Exception as exc:
                if self._reconnect_attempts >= self.backoff.max_attempts:
                    self._state = ConnectionState.DISCONNECTED
                    self.logger.warning("Max reconnection attempts reached (%d)", self.backoff.max_attempts)
                    raise BridgeConnectionError(
                        f"Unable to reach bridge server after {self._reconnect_attempts} "
                        f"reconnection attempts: {exc}"
                    ) from exc
                await self._wait_before_retry(exc)

    async def _wait_before_retry(self, exc: BaseException) -> None:
        delay = self.backoff.delay(self._reconnect_attempts)
        self._reconnect_attempts += 1
        self._state = ConnectionState.RECONNECTING
        if self._reconnect_attempts == 1:
            self.logger.info("Bridge server not available (%s)", exc)
        self.logger.info("Scheduling reconnection attempt %d in %.1fs", self._reconnect_attempts, delay)
        await self._sleep(delay)

    async def _connect_once(self) -> None:
        self._state = ConnectionState.CONNECTING
        kind = self.determine_transport()
        self.logger.info("Connecting to bridge server using %s", kind.value)
        transport = self._transport_factory(kind)
        try:
            await asyncio.wait_for(
                transport.connect(self._handle_raw, self._handle_transport_close),
                timeout=self.settings.connection_timeout,
            )
        except BaseException:
            self._state = ConnectionState.DISCONNECTED
            await self._close_quietly(transport)
            raise
        self._transport = transport
        self._active_kind = kind
        self._state = ConnectionState.CONNECTED
        self._reconnect_attempts = 0
        self.logger.info("Connected via %s", kind.value)
        self._start_heartbeat()

    async def disconnect(self) -> None:
        """Tear down whichever transport is active; never reconnects."""
        self._cancel_reconnect()
        self._stop_heartbeat()
        transport, self._transport = self._transport, None
        if transport is not None:
            await self._close_quietly(transport)
        self._active_kind = None
        self._state = ConnectionState.DISCONNECTED
        self._fail_pending(BridgeNotConnectedError("bridge disconnected"))
        for task in list(self._tasks):
            task.cancel()
        self.logger.info("Disconnected from bridge server")

    def _handle_transport_close(self, clean: bool) -> None:
        self.logger.info("Transport closed (%s)", "clean" if clean else "unexpected")
        self._transport = None
        self._stop_heartbeat()
        self._state = ConnectionState.DISCONNECTED
        self._fail_pending(BridgeNotConnectedError("bridge connection lost"))
        if clean:
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect_in_background())

    async def _reconnect_in_background(self) -> None:
        try:
            await self._wait_before_retry(ConnectionError("connection lost"))
            await self._connect_with_retry()
        except BridgeConnectionError as exc:
            self.logger.warning("Giving up on reconnection: %s", exc)
        except asyncio.CancelledError:
            raise

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _close_quietly(self, transport: Transport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            self.logger.debug("Error while closing transport: %s", exc)

    # Outbound --------------------------------------------------------------------
    async def send(self, envelope: Envelope) -> None:
        """Best-effort post; logs instead of raising when it cannot be sent."""
        transport = self._transport
        if self._state is not ConnectionState.CONNECTED or transport is None:
            self.logger.warning("Cannot send message - not connected")
            return
        message = envelope.to_wire()
        try:
            await transport.send(message)
        except Exception as exc:
            self.logger.error("Failed to send message: %s", exc)
            return
        self.logger.debug("Sent message via %s: %s", transport.kind.value, message.get("type"))

    async def emit_to_server(self, kind: str, data: Optional[Dict[str, Any]] = None) -> None:
        await self.send(EventEnvelope(kind=kind, data=data or {}))

    async def query(self, method: str, params: Optional[Dict[str, Any]] = None, *,
                    timeout: Optional[float] = None) -> Any:
        """Send a correlated query to the peer and wait for its response."""
        if not self.is_connected():
            raise BridgeNotConnectedError(f"cannot query {method}: bridge not connected")
        request_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        await self.send(QueryEnvelope(id=request_id, method=method, params=params or {}))
        try:
            return await asyncio.wait_for(future, timeout=timeout or self.settings.query_timeout)
        finally:
            self._pending.pop(request_id, None)

    async def ping(self, timeout: float = 5.0) -> bool:
        """Liveness check: ``True`` when a pong arrives within ``timeout``."""
        if not self.is_connected():
            return False
        ping_id = uuid.uuid4().hex
        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pong_waiters[ping_id] = waiter
        await self.send(PingEnvelope(MessageType.PING.value, ping_id, {"timestamp": int(time.time() * 1000)}))
        try:
            await asyncio.wait_for(waiter, timeout=timeout)
            return True
        except (asyncio.TimeoutError, BridgeNotConnectedError):
            return False
        finally:
            self._pong_waiters.pop(ping_id, None)

    def _start_heartbeat(self) -> None:
        if self.settings.heartbeat_interval <= 0:
            return
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _heartbeat_loop(self) -> None:
        interval = self.settings.heartbeat_interval
        while self.is_connected():
            await asyncio.sleep(interval)
            if not self.is_connected():
                return
            if await self.ping(timeout=min(interval, 10.0)):
                continue
            if not self.is_connected():
                return
            self.logger.warning("Heartbeat ping unanswered; treating transport as stalled")
            transport, self._transport = self._transport, None
            self._heartbeat_task = None
            if transport is not None:
                await self._close_quietly(transport)
            self._handle_transport_close(False)
            return

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()
        for waiter in list(self._pong_waiters.values()):
            if not waiter.done():
                waiter.set_exception(exc)
        self._pong_waiters.clear()

    # Inbound ---------------------------------------------------------------------
    def _handle_raw(self, message: Dict[str, Any]) -> None:
        try:
            envelope = parse_envelope(message)
        except ProtocolError as exc:
            self.logger.warning("Dropping invalid envelope: %s", exc)
            return
        self.dispatch(envelope)

    def dispatch(self, envelope: Envelope) -> None:
        if isinstance(envelope, QueryEnvelope):
            self._spawn(self._answer_query(envelope))
        elif isinstance(envelope, ResponseEnvelope):
            self._resolve_response(envelope)
        elif isinstance(envelope, PingEnvelope):
            if envelope.is_ping:
                self._spawn(self.send(envelope.reply()))
            elif envelope.id in self._pong_waiters:
                waiter = self._pong_waiters[envelope.id]
                if not waiter.done():
                    waiter.set_result(envelope.data)
        else:
            self._dispatch_event(envelope)

    async def _answer_query(self, query: QueryEnvelope) -> None:
        self.logger.info("Handling MCP query: %s", query.method)
        handler = self._query_handlers.get(query.method)
        if handler is None:
            self.logger.warning("No handler found for query: %s", query.method)
            await self.send(ResponseEnvelope(id=query.id, success=False,
                                             error=f"No handler found for query: {query.method}"))
            return
        try:
            result = handler(query.params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            self.logger.warning("Query failed: %s - %s", query.method, exc)
            await self.send(ResponseEnvelope(id=query.id, success=False, error=str(exc) or "Unknown error"))
            return
        self.logger.info("Query completed: %s", query.method)
        await self.send(ResponseEnvelope(id=query.id, success=True, data=result))

    def _resolve_response(self, response: ResponseEnvelope) -> None:
        future = self._pending.pop(response.id, None)
        if future is None:
            self.logger.debug("No pending query for response id %s", response.id)
            return
        if future.done():
            return
        if response.success:
            future.set_result(response.data)
        else:
            future.set_exception(RuntimeError(response.error or "query failed"))

    def _dispatch_event(self, event: EventEnvelope) -> None:
        handlers = list(self._event_handlers.get(event.kind, []))
        if not handlers:
            self.logger.debug("Unhandled event %s", event.kind)
            return
        for handler in handlers:
            try:
                outcome = handler(event.data)
            except Exception:
                self.logger.exception("Event handler failed for %s", event.kind)
                continue
            if inspect.isawaitable(outcome):
                self._spawn(outcome)

    def _spawn(self, awaitable: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)

        def _done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                self.logger.error("Bridge task failed: %s", finished.exception())

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for query answers and async event handlers started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Defaults --------------------------------------------------------------------
    def _default_transport(self, kind: TransportKind) -> Transport:
        return build_transport(
            kind,
            host=self.settings.host,
            port=self.settings.port,
            signaling_port=self.settings.signaling_port,
            namespace=self.settings.namespace,
            timeout=self.settings.connection_timeout,
        )


__all__ = ["DualTransportBridge", "EventHandler", "QueryHandler", "TransportFactory"]
