"""Newline-delimited JSON framing for the loopback IPC channel.

Each frame is one UTF-8 JSON object terminated by ``\\n``. Requests carry
``{id, method, params?}``; responses carry ``{id, result?}`` or
``{id, error: {message}}``.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

from ..errors import ProtocolError

_logger = logging.getLogger("ipc.codec")

FRAME_DELIMITER = b"\n"


def new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Request:
    id: str
    method: str
    params: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        return {"id": self.id, "method": self.method, "params": self.params}


@dataclass(frozen=True)
class Response:
    id: str
    result: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> Dict[str, Any]:
        if self.error is not None:
            return {"id": self.id, "error": {"message": self.error}}
        return {"id": self.id, "result": self.result}


def encode_frame(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":"), default=str).encode("utf-8") + FRAME_DELIMITER


def parse_request(message: Dict[str, Any]) -> Request:
    request_id = message.get("id")
    method = message.get("method")
    if not isinstance(request_id, str) or not request_id:
        raise ProtocolError("request is missing a string id")
    if not isinstance(method, str) or not method:
        raise ProtocolError(f"request {request_id} is missing a method")
    params = message.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ProtocolError(f"request {request_id} params must be an object")
    return Request(id=request_id, method=method, params=params)


def parse_response(message: Dict[str, Any]) -> Response:
    request_id = message.get("id")
    if not isinstance(request_id, str) or not request_id:
        raise ProtocolError("response is missing a string id")
    error = message.get("error")
    if error is not None:
        if isinstance(error, dict):
            text = str(error.get("message") or "backend error")
        else:
            text = str(error)
        return Response(id=request_id, error=text)
    return Response(id=request_id, result=message.get("result"))


class LineDecoder:
    """Incremental frame splitter.

    Bytes are appended to a receive buffer which is scanned for line
    boundaries; a trailing partial frame is kept until the next ``feed``.
    """

    def __init__(self, *, max_frame_bytes: int = 16 * 1024 * 1024) -> None:
        self._buffer = bytearray()
        self._max_frame_bytes = max_frame_bytes

    @property
    def pending_bytes(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """Append ``chunk`` and return every complete, well-formed frame."""
        self._buffer.extend(chunk)
        messages = list(self._drain())
        if len(self._buffer) > self._max_frame_bytes:
            _logger.warning("Discarding oversized partial frame (%d bytes)", len(self._buffer))
            self._buffer.clear()
        return messages

    def _drain(self) -> Iterator[Dict[str, Any]]:
        while True:
            index = self._buffer.find(FRAME_DELIMITER)
            if index < 0:
                return
            raw = bytes(self._buffer[:index]).strip()
            del self._buffer[:index + 1]
            if not raw:
                continue
            try:
                message = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as exc:
                _logger.warning("Dropping malformed frame (%d bytes): %s", len(raw), exc)
                continue
            if not isinstance(message, dict):
                _logger.warning("Dropping non-object frame: %r", message)
                continue
            yield message


__all__ = [
    "FRAME_DELIMITER",
    "LineDecoder",
    "Request",
    "Response",
    "encode_frame",
    "new_request_id",
    "parse_request",
    "parse_response",
]
