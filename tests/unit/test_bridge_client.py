from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from mapbridge.bridge.client import DualTransportBridge
from mapbridge.bridge.transports import Transport
from mapbridge.constants import ConnectionState, TransportKind
from mapbridge.errors import BridgeConnectionError, BridgeNotConnectedError
from mapbridge.settings import BridgeSettings

from conftest import SleepRecorder


class FakeTransport(Transport):
    kind = TransportKind.WEBSOCKET

    def __init__(self, error: Optional[Exception] = None) -> None:
        super().__init__(host="127.0.0.1", port=0, timeout=1.0)
        self.error = error
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    async def connect(self, on_message, on_close) -> None:
        if self.error is not None:
            raise self.error
        self._on_message = on_message
        self._on_close = on_close

    async def send(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self._closing = True
        self.closed = True

    def receive(self, message: Dict[str, Any]) -> None:
        self._on_message(message)

    def drop(self, clean: bool) -> None:
        self._report_close(clean)


class TransportFactory:
    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.kinds: List[TransportKind] = []
        self.transports: List[FakeTransport] = []

    def __call__(self, kind: TransportKind) -> FakeTransport:
        self.kinds.append(kind)
        error = ConnectionRefusedError("bridge server down") if len(self.kinds) <= self.failures else None
        transport = FakeTransport(error)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


def _settings(**overrides: Any) -> BridgeSettings:
    values = dict(connection_type="websocket", reconnect_attempts=3, reconnect_delay=1.0,
                  reconnect_cap=3.0, connection_timeout=1.0, heartbeat_interval=0)
    values.update(overrides)
    return BridgeSettings(**values)


async def _wait_for_state(bridge: DualTransportBridge, state: ConnectionState) -> None:
    for _ in range(100):
        if bridge.state is state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"bridge never reached {state.value} (currently {bridge.state.value})")


async def _connected_bridge(**overrides: Any):
    factory = TransportFactory()
    sleep = SleepRecorder()
    bridge = DualTransportBridge(_settings(**overrides), transport_factory=factory, sleep=sleep)
    await bridge.connect()
    return bridge, factory, sleep


@pytest.mark.parametrize(
    "configured, secure, expected",
    [
        ("auto", True, TransportKind.WEBRTC),
        ("auto", False, TransportKind.WEBSOCKET),
        ("webrtc", False, TransportKind.WEBRTC),
        ("websocket", True, TransportKind.WEBSOCKET),
    ],
)
def test_transport_selection(configured, secure, expected):
    bridge = DualTransportBridge(_settings(connection_type=configured), secure_context=secure)
    assert bridge.determine_transport() is expected


@pytest.mark.asyncio
async def test_connect_gives_up_after_attempt_ceiling():
    factory = TransportFactory(failures=100)
    sleep = SleepRecorder()
    bridge = DualTransportBridge(_settings(), transport_factory=factory, sleep=sleep)

    with pytest.raises(BridgeConnectionError):
        await bridge.connect()

    assert sleep.delays == [1.0, 2.0, 3.0], "Delays double from the base and stop at the cap"
    assert len(factory.kinds) == 4, "One initial attempt plus one per allowed reconnection"
    assert bridge.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_connect_recovers_and_resets_attempts():
    factory = TransportFactory(failures=2)
    sleep = SleepRecorder()
    bridge = DualTransportBridge(_settings(), transport_factory=factory, sleep=sleep)

    await bridge.connect()

    assert bridge.is_connected()
    info = bridge.connection_info()
    assert info["type"] == "websocket"
    assert info["state"] == "connected"
    assert info["reconnectAttempts"] == 0
    assert info["maxReconnectAttempts"] == 3
    assert info["config"]["namespace"] == "/foundry-mcp"


@pytest.mark.asyncio
async def test_unknown_query_gets_failure_response():
    bridge, factory, _ = await _connected_bridge()
    factory.current.receive({"type": "mcp-query", "id": "q-1",
                             "data": {"method": "foundry-mcp-bridge.unknown", "data": {}}})
    await bridge.drain()

    assert factory.current.sent[-1] == {
        "type": "mcp-response",
        "id": "q-1",
        "data": {"success": False, "error": "No handler found for query: foundry-mcp-bridge.unknown"},
    }


@pytest.mark.asyncio
async def test_registered_query_handler_answers():
    bridge, factory, _ = await _connected_bridge()

    async def list_scenes(params):
        return [{"id": "s1", "name": "Harbor District", "active": params.get("include_active_only")}]

    bridge.register_query("foundry-mcp-bridge.list-scenes", list_scenes)
    factory.current.receive({"type": "mcp-query", "id": "q-2",
                             "data": {"method": "foundry-mcp-bridge.list-scenes",
                                      "data": {"include_active_only": True}}})
    await bridge.drain()

    response = factory.current.sent[-1]
    assert response["data"]["success"] is True
    assert response["data"]["data"] == [{"id": "s1", "name": "Harbor District", "active": True}]


@pytest.mark.asyncio
async def test_ping_is_answered_with_pong():
    bridge, factory, _ = await _connected_bridge()
    factory.current.receive({"type": "ping", "id": "p-1", "data": {"timestamp": 1}})
    await bridge.drain()

    pong = factory.current.sent[-1]
    assert pong["type"] == "pong"
    assert pong["id"] == "p-1"
    assert pong["data"]["status"] == "ok"
    assert isinstance(pong["data"]["timestamp"], int)


@pytest.mark.asyncio
async def test_events_reach_registered_handlers():
    bridge, factory, _ = await _connected_bridge()
    received = []
    bridge.on("job-completed", received.append)

    factory.current.receive({"type": "job-completed", "data": {"job_id": "job_1"}, "timestamp": 5})

    assert received == [{"job_id": "job_1"}]


@pytest.mark.asyncio
async def test_outbound_query_resolves_on_response():
    bridge, factory, _ = await _connected_bridge()
    task = asyncio.ensure_future(bridge.query("foundry-mcp-bridge.switch-scene", {"scene_identifier": "s1"}))
    await asyncio.sleep(0)

    query = factory.current.sent[-1]
    assert query["type"] == "mcp-query"
    assert query["data"] == {"method": "foundry-mcp-bridge.switch-scene", "data": {"scene_identifier": "s1"}}
    factory.current.receive({"type": "mcp-response", "id": query["id"],
                             "data": {"success": True, "data": {"switched": True}}})

    assert await task == {"switched": True}


@pytest.mark.asyncio
async def test_clean_close_does_not_reconnect():
    bridge, factory, sleep = await _connected_bridge()
    task = asyncio.ensure_future(bridge.query("foundry-mcp-bridge.list-scenes"))
    await asyncio.sleep(0)

    factory.current.drop(clean=True)

    with pytest.raises(BridgeNotConnectedError):
        await task
    await asyncio.sleep(0.05)
    assert bridge.state is ConnectionState.DISCONNECTED
    assert len(factory.kinds) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_unexpected_close_reconnects_with_backoff():
    bridge, factory, sleep = await _connected_bridge()
    factory.current.drop(clean=False)

    await _wait_for_state(bridge, ConnectionState.CONNECTED)

    assert len(factory.kinds) == 2
    assert sleep.delays == [1.0]
    await bridge.disconnect()


@pytest.mark.asyncio
async def test_disconnect_is_clean_and_sends_are_dropped():
    bridge, factory, sleep = await _connected_bridge()
    transport = factory.current

    await bridge.disconnect()
    await bridge.emit_to_server("map-generation-progress", {"progress": 10})

    assert transport.closed
    assert transport.sent == []
    assert bridge.state is ConnectionState.DISCONNECTED
    assert not await bridge.ping(timeout=0.01)
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_ping_reports_false_when_transport_drops():
    bridge, factory, _ = await _connected_bridge()
    pending_ping = asyncio.ensure_future(bridge.ping(timeout=2.0))
    await asyncio.sleep(0)
    assert factory.current.sent[-1]["type"] == "ping"

    factory.current.drop(clean=True)

    assert await asyncio.wait_for(pending_ping, timeout=1.0) is False
    assert bridge.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_non_finite_timestamp_keeps_connection():
    bridge, factory, sleep = await _connected_bridge()
    received = []
    bridge.on("job-completed", received.append)

    factory.current._deliver('{"type": "job-completed", "data": {"job_id": "job_1"}, "timestamp": NaN}')
    factory.current._deliver('{"type": "job-completed", "data": {"job_id": "job_2"}, "timestamp": -Infinity}')

    assert received == [{"job_id": "job_1"}, {"job_id": "job_2"}]
    assert bridge.is_connected()
    assert sleep.delays == []
