"""The two interchangeable byte-level channels used by the remote bridge.

Both transports carry the same JSON envelopes. ``WebSocketTransport`` is the
plain local socket; ``WebRTCTransport`` opens an encrypted peer-to-peer data
channel whose offer/answer is exchanged over a small HTTP signaling endpoint.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import aiohttp
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from ..constants import TransportKind

MessageCallback = Callable[[Dict[str, Any]], None]
CloseCallback = Callable[[bool], None]

DATA_CHANNEL_LABEL = "mcp-bridge"
SIGNALING_PATH = "/webrtc/offer"


class Transport(ABC):
    """Connect/send/close contract shared by both channels.

    ``on_close(clean)`` is invoked once when the peer goes away without
    :meth:`close` having been called; ``clean`` tells the bridge whether the
    close was graceful.
    """

    kind: TransportKind

    def __init__(self, *, host: str, port: int, timeout: float,
                 logger: Optional[logging.Logger] = None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.logger = logger or logging.getLogger(f"bridge.transport.{self.kind.value}")
        self._on_message: Optional[MessageCallback] = None
        self._on_close: Optional[CloseCallback] = None
        self._closing = False
        self._close_reported = False

    @abstractmethod
    async def connect(self, on_message: MessageCallback, on_close: CloseCallback) -> None:
        """Open the channel; raise on failure or after ``timeout`` seconds."""

    @abstractmethod
    async def send(self, message: Dict[str, Any]) -> None:
        """Serialize and send one envelope."""

    @abstractmethod
    async def close(self) -> None:
        """Tear the channel down without reporting it as a peer close."""

    def _deliver(self, raw: Any) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        try:
            message = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            self.logger.warning("Failed to parse message: %s", exc)
            return
        if self._on_message is not None:
            self._on_message(message)

    def _report_close(self, clean: bool) -> None:
        if self._closing or self._close_reported:
            return
        self._close_reported = True
        if self._on_close is not None:
            self._on_close(clean)


class WebSocketTransport(Transport):
    """Plain WebSocket channel for insecure, purely local contexts."""

    kind = TransportKind.WEBSOCKET

    def __init__(self, *, host: str, port: int, namespace: str = "", timeout: float = 10.0,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(host=host, port=port, timeout=timeout, logger=logger)
        self.namespace = namespace
        self._ws = None
        self._reader: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}{self.namespace}"

    async def connect(self, on_message: MessageCallback, on_close: CloseCallback) -> None:
        self._on_message = on_message
        self._on_close = on_close
        self.logger.info("Using WebSocket (%s)", self.url)
        self._ws = await ws_connect(self.url, open_timeout=self.timeout)
        self._reader = asyncio.ensure_future(self._receive_loop())

    async def _receive_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return
        clean = False
        try:
            async for raw in ws:
                self._deliver(raw)
            clean = True
        except ConnectionClosedOK:
            clean = True
        except ConnectionClosed as exc:
            self.logger.warning("WebSocket closed abnormally: %s", exc)
        finally:
            self._ws = None
            self._report_close(clean)

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ConnectionError("WebSocket transport is not open")
        await self._ws.send(json.dumps(message, default=str))

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close(code=1000, reason="Manual disconnect")
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
        self._reader = None


class WebRTCTransport(Transport):
    """Encrypted peer-to-peer data channel negotiated through HTTP signaling."""

    kind = TransportKind.WEBRTC

    def __init__(self, *, host: str, port: int, timeout: float = 10.0,
                 stun_servers: Optional[list[str]] = None,
                 logger: Optional[logging.Logger] = None) -> None:
        super().__init__(host=host, port=port, timeout=timeout, logger=logger)
        # Empty for localhost; must match the answering side.
        self.stun_servers = list(stun_servers or [])
        self._pc = None
        self._channel = None

    @property
    def signaling_url(self) -> str:
        return f"http://{self.host}:{self.port}{SIGNALING_PATH}"

    async def connect(self, on_message: MessageCallback, on_close: CloseCallback) -> None:
        from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription

        self._on_message = on_message
        self._on_close = on_close
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.stun_servers])
        pc = RTCPeerConnection(configuration=config)
        self._pc = pc
        channel = pc.createDataChannel(DATA_CHANNEL_LABEL)
        self._channel = channel
        opened = asyncio.Event()

        @channel.on("open")
        def _on_open() -> None:
            opened.set()

        @channel.on("message")
        def _on_channel_message(raw: Any) -> None:
            self._deliver(raw)

        @channel.on("close")
        def _on_channel_close() -> None:
            # Channel closed while the peer connection is still up: the peer
            # hung up deliberately.
            self._report_close(pc.connectionState == "connected")

        @pc.on("connectionstatechange")
        async def _on_state_change() -> None:
            self.logger.debug("Peer connection state: %s", pc.connectionState)
            if pc.connectionState in ("failed", "disconnected"):
                self._report_close(False)

        try:
            await pc.setLocalDescription(await pc.createOffer())
            answer = await self._exchange_offer(pc.localDescription.sdp, pc.localDescription.type)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))
            await asyncio.wait_for(opened.wait(), timeout=self.timeout)
        except BaseException:
            self._closing = True
            await pc.close()
            self._pc = None
            self._channel = None
            raise

    async def _exchange_offer(self, sdp: str, sdp_type: str) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.signaling_url, json={"sdp": sdp, "type": sdp_type}) as resp:
                resp.raise_for_status()
                answer = await resp.json()
        if not isinstance(answer, dict) or "sdp" not in answer or "type" not in answer:
            raise ConnectionError("Signaling endpoint returned an invalid answer")
        return answer

    async def send(self, message: Dict[str, Any]) -> None:
        channel = self._channel
        if channel is None or channel.readyState != "open":
            raise ConnectionError("WebRTC data channel is not open")
        channel.send(json.dumps(message, default=str))

    async def close(self) -> None:
        self._closing = True
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        if channel is not None:
            channel.close()
        if pc is not None:
            await pc.close()


def build_transport(kind: TransportKind, *, host: str, port: int, signaling_port: int,
                    namespace: str, timeout: float) -> Transport:
    if kind is TransportKind.WEBRTC:
        return WebRTCTransport(host=host, port=signaling_port, timeout=timeout)
    if kind is TransportKind.WEBSOCKET:
        return WebSocketTransport(host=host, port=port, namespace=namespace, timeout=timeout)
    raise ValueError(f"transport kind must be concrete, got {kind.value}")


__all__ = [
    "CloseCallback",
    "MessageCallback",
    "Transport",
    "WebRTCTransport",
    "WebSocketTransport",
    "build_transport",
]
