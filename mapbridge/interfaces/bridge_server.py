"""Backend end of the remote bridge.

Accepts one visual client at a time, over either the WebSocket namespace or a
WebRTC data channel negotiated through a small aiohttp signaling app, forwards
job events from the bus, and lets the backend issue correlated queries to the
client (scene listing, scene switching).
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aiohttp import web
from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from ..bridge.envelope import (
    EventEnvelope,
    PingEnvelope,
    QueryEnvelope,
    ResponseEnvelope,
    parse_envelope,
)
from ..bridge.transports import DATA_CHANNEL_LABEL, SIGNALING_PATH
from ..constants import EventTopic, TransportKind
from ..core.event_bus import Event, EventBus
from ..errors import BridgeNotConnectedError, ProtocolError
from ..settings import BridgeSettings
from .base import BaseInterface

FORWARDED_TOPICS = (EventTopic.JOB_PROGRESS, EventTopic.JOB_COMPLETED)


class _Peer:
    """The single connected visual client, whichever transport it used."""

    def __init__(self, kind: TransportKind, sender: Callable[[str], Awaitable[None]],
                 closer: Callable[[], Awaitable[None]]) -> None:
        self.kind = kind
        self.token = uuid.uuid4().hex
        self._sender = sender
        self._closer = closer

    async def send(self, message: Dict[str, Any]) -> None:
        await self._sender(json.dumps(message, default=str))

    async def close(self) -> None:
        await self._closer()


class BridgeHub(BaseInterface):
    """Serve the visual client and relay bus events to it."""

    def __init__(self, name: str, bus: EventBus, *, settings: BridgeSettings,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(name, bus, logger=logger or logging.getLogger("bridge.hub"))
        self.settings = settings
        self._ws_server = None
        self._signaling_runner: Optional[web.AppRunner] = None
        self._peer: Optional[_Peer] = None
        self._peer_connections: List[Any] = []
        self._pending: Dict[str, asyncio.Future] = {}
        self._subscriptions: List[tuple[EventTopic, Callable[[Event], Any]]] = []

    # Lifecycle -------------------------------------------------------------------
    async def start(self) -> None:
        if self._running:
            return
        self.logger.info("Starting bridge hub on %s:%s%s", self.settings.host,
                         self.settings.port, self.settings.namespace)
        self._ws_server = await serve(self._client_handler, self.settings.host, self.settings.port)
        await self._start_signaling()
        for topic in FORWARDED_TOPICS:
            callback = self._make_forwarder(topic)
            self.bus.subscribe(topic, callback)
            self._subscriptions.append((topic, callback))
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self.logger.info("Stopping bridge hub")
        for topic, callback in self._subscriptions:
            self.bus.unsubscribe(topic, callback)
        self._subscriptions.clear()
        await self._drop_peer(BridgeNotConnectedError("bridge hub stopped"))
        for pc in list(self._peer_connections):
            await pc.close()
        self._peer_connections.clear()
        if self._signaling_runner is not None:
            await self._signaling_runner.cleanup()
            self._signaling_runner = None
        if self._ws_server is not None:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None
        self._running = False

    async def _start_signaling(self) -> None:
        app = web.Application()
        app.router.add_post(SIGNALING_PATH, self._handle_offer)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, self.settings.host, self.settings.signaling_port)
        await site.start()
        self._signaling_runner = runner

    @property
    def bound_port(self) -> int:
        if self._ws_server is None or not self._ws_server.sockets:
            return self.settings.port
        return list(self._ws_server.sockets)[0].getsockname()[1]

    @property
    def connected(self) -> bool:
        return self._peer is not None

    @property
    def peer_kind(self) -> Optional[TransportKind]:
        return self._peer.kind if self._peer else None

    # WebSocket -------------------------------------------------------------------
    async def _client_handler(self, websocket: ServerConnection) -> None:
        path = websocket.request.path if websocket.request else ""
        if path.split("?", 1)[0] != self.settings.namespace:
            self.logger.warning("Rejecting client on unknown path %s", path)
            await websocket.close(code=1008, reason="unknown namespace")
            return

        async def _close() -> None:
            await websocket.close(code=1000, reason="Replaced by newer client")

        peer = _Peer(TransportKind.WEBSOCKET, websocket.send, _close)
        await self._attach(peer)
        self.logger.info("Visual client connected via websocket: %s", websocket.remote_address)
        try:
            async for raw in websocket:
                self._handle_text(raw, peer)
        except ConnectionClosed:
            pass
        finally:
            await self._detach(peer)

    # WebRTC ----------------------------------------------------------------------
    async def _handle_offer(self, request: web.Request) -> web.Response:
        from aiortc import RTCPeerConnection, RTCSessionDescription

        try:
            offer = await request.json()
            description = RTCSessionDescription(sdp=offer["sdp"], type=offer["type"])
        except (ValueError, KeyError, TypeError) as exc:
            self.logger.warning("Invalid signaling offer: %s", exc)
            return web.json_response({"error": "invalid offer"}, status=400)

        pc = RTCPeerConnection()
        self._peer_connections.append(pc)

        @pc.on("datachannel")
        def _on_datachannel(channel: Any) -> None:
            if channel.label != DATA_CHANNEL_LABEL:
                self.logger.warning("Ignoring unexpected data channel %s", channel.label)
                return

            async def _send(text: str) -> None:
                channel.send(text)

            async def _close() -> None:
                channel.close()

            peer = _Peer(TransportKind.WEBRTC, _send, _close)
            asyncio.ensure_future(self._attach(peer))
            self.logger.info("Visual client connected via webrtc")

            @channel.on("message")
            def _on_message(raw: Any) -> None:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                self._handle_text(raw, peer)

            @channel.on("close")
            def _on_close() -> None:
                asyncio.ensure_future(self._detach(peer))

        @pc.on("connectionstatechange")
        async def _on_state_change() -> None:
            if pc.connectionState in ("failed", "closed"):
                if pc in self._peer_connections:
                    self._peer_connections.remove(pc)
                await pc.close()

        await pc.setRemoteDescription(description)
        await pc.setLocalDescription(await pc.createAnswer())
        return web.json_response({"sdp": pc.localDescription.sdp, "type": pc.localDescription.type})

    # Peer bookkeeping ------------------------------------------------------------
    async def _attach(self, peer: _Peer) -> None:
        previous, self._peer = self._peer, peer
        if previous is not None:
            self.logger.info("Replacing existing %s client", previous.kind.value)
            self._fail_pending(BridgeNotConnectedError("visual client replaced"))
            try:
                await previous.close()
            except Exception as exc:
                self.logger.debug("Error closing replaced client: %s", exc)

    async def _detach(self, peer: _Peer) -> None:
        if self._peer is not peer:
            return
        self._peer = None
        self._fail_pending(BridgeNotConnectedError("visual client disconnected"))
        self.logger.info("Visual client disconnected (%s)", peer.kind.value)

    async def _drop_peer(self, exc: Exception) -> None:
        peer, self._peer = self._peer, None
        self._fail_pending(exc)
        if peer is not None:
            try:
                await peer.close()
            except Exception as close_exc:
                self.logger.debug("Error closing client: %s", close_exc)

    def _fail_pending(self, exc: Exception) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        self._pending.clear()

    # Messages --------------------------------------------------------------------
    def _handle_text(self, raw: str, peer: _Peer) -> None:
        try:
            envelope = parse_envelope(json.loads(raw))
        except (json.JSONDecodeError, ProtocolError) as exc:
            self.logger.warning("Dropping invalid envelope from client: %s", exc)
            return
        if isinstance(envelope, ResponseEnvelope):
            future = self._pending.pop(envelope.id, None)
            if future is None or future.done():
                self.logger.debug("No pending query for response id %s", envelope.id)
            elif envelope.success:
                future.set_result(envelope.data)
            else:
                future.set_exception(RuntimeError(envelope.error or "query failed"))
        elif isinstance(envelope, PingEnvelope):
            if envelope.is_ping:
                asyncio.ensure_future(self._send_to(peer, envelope.reply().to_wire()))
        elif isinstance(envelope, QueryEnvelope):
            asyncio.ensure_future(self._send_to(peer, ResponseEnvelope(
                id=envelope.id, success=False,
                error=f"No handler found for query: {envelope.method}").to_wire()))
        else:
            self.logger.debug("Client event %s ignored", envelope.kind)

    async def _send_to(self, peer: _Peer, message: Dict[str, Any]) -> None:
        try:
            await peer.send(message)
        except Exception as exc:
            self.logger.warning("Failed to send %s to client: %s", message.get("type"), exc)

    async def broadcast(self, kind: str, data: Dict[str, Any]) -> bool:
        """Best-effort event push; ``False`` when no client is attached."""
        peer = self._peer
        if peer is None:
            self.logger.debug("No visual client connected; dropping %s", kind)
            return False
        await self._send_to(peer, EventEnvelope(kind=kind, data=data).to_wire())
        return True

    async def query(self, method: str, params: Optional[Dict[str, Any]] = None, *,
                    timeout: Optional[float] = None) -> Any:
        """Issue a correlated query to the visual client and await its answer."""
        peer = self._peer
        if peer is None:
            raise BridgeNotConnectedError("Visual client is not connected")
        query_id = uuid.uuid4().hex
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[query_id] = future
        try:
            await peer.send(QueryEnvelope(id=query_id, method=method, params=params or {}).to_wire())
            return await asyncio.wait_for(future, timeout=timeout or self.settings.query_timeout)
        finally:
            self._pending.pop(query_id, None)

    def _make_forwarder(self, topic: EventTopic):
        async def forward(event: Event) -> None:
            await self.broadcast(topic.value, event.payload)
        return forward


__all__ = ["BridgeHub", "FORWARDED_TOPICS"]
