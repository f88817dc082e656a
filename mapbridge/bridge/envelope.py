"""Tagged-union envelopes carried over either remote-bridge transport.

Every message is ``{type, id?, data?, timestamp?}``. The ``type`` selects one
of three families, each with its own required fields:

- query / response: correlated by ``id``; a query's ``data`` must name a
  ``method``.
- liveness: ``ping`` / ``pong`` pair.
- event: one-way notifications (progress, completion).
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from ..constants import MessageType
from ..errors import ProtocolError


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class QueryEnvelope:
    id: str
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {"type": MessageType.QUERY.value, "id": self.id,
                "data": {"method": self.method, "data": self.params}}


@dataclass(frozen=True)
class ResponseEnvelope:
    id: str
    success: bool
    data: Any = None
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": self.success}
        if self.success:
            body["data"] = self.data
        else:
            body["error"] = self.error or "Unknown error"
        return {"type": MessageType.RESPONSE.value, "id": self.id, "data": body}


@dataclass(frozen=True)
class PingEnvelope:
    kind: str
    id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_ping(self) -> bool:
        return self.kind == MessageType.PING.value

    def reply(self) -> "PingEnvelope":
        return PingEnvelope(MessageType.PONG.value, self.id, {"timestamp": _now_ms(), "status": "ok"})

    def to_wire(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"type": self.kind, "data": self.data}
        if self.id is not None:
            message["id"] = self.id
        return message


@dataclass(frozen=True)
class EventEnvelope:
    kind: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=_now_ms)

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.kind, "data": self.data, "timestamp": self.timestamp}


Envelope = Union[QueryEnvelope, ResponseEnvelope, PingEnvelope, EventEnvelope]


def parse_envelope(message: Any) -> Envelope:
    """Validate a decoded JSON message and return its typed envelope.

    Raises:
        ProtocolError: the message is not an object, has no ``type``, or is
            missing a field its family requires.
    """
    if not isinstance(message, dict):
        raise ProtocolError("envelope must be a JSON object")
    kind = message.get("type")
    if not isinstance(kind, str) or not kind:
        raise ProtocolError("envelope is missing a type")
    message_id = message.get("id")
    data = message.get("data")

    if kind == MessageType.QUERY.value:
        if not isinstance(message_id, str) or not message_id:
            raise ProtocolError("query envelope requires an id")
        if not isinstance(data, dict) or not isinstance(data.get("method"), str):
            raise ProtocolError(f"query {message_id} requires data.method")
        params = data.get("data") or {}
        if not isinstance(params, dict):
            raise ProtocolError(f"query {message_id} data.data must be an object")
        return QueryEnvelope(id=message_id, method=data["method"], params=params)

    if kind == MessageType.RESPONSE.value:
        if not isinstance(message_id, str) or not message_id:
            raise ProtocolError("response envelope requires an id")
        body = data if isinstance(data, dict) else {}
        success = bool(body.get("success", False))
        error = body.get("error")
        return ResponseEnvelope(id=message_id, success=success, data=body.get("data"),
                                error=None if error is None else str(error))

    if kind in (MessageType.PING.value, MessageType.PONG.value):
        ping_id = message_id if isinstance(message_id, str) else None
        return PingEnvelope(kind=kind, id=ping_id, data=data if isinstance(data, dict) else {})

    timestamp = message.get("timestamp")
    # json.loads accepts NaN and Infinity.
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)) or not math.isfinite(timestamp):
        timestamp = _now_ms()
    return EventEnvelope(
        kind=kind,
        data=data if isinstance(data, dict) else {},
        timestamp=int(timestamp),
    )


__all__ = [
    "Envelope",
    "EventEnvelope",
    "PingEnvelope",
    "QueryEnvelope",
    "ResponseEnvelope",
    "parse_envelope",
]
