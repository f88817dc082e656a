from __future__ import annotations

import pytest

from mapbridge.errors import ProtocolError
from mapbridge.interfaces.line_codec import (
    LineDecoder,
    Request,
    Response,
    encode_frame,
    parse_request,
    parse_response,
)


def test_decoder_keeps_partial_frames_between_reads():
    decoder = LineDecoder()
    first = encode_frame({"id": "a", "result": 1})
    second = encode_frame({"id": "b", "result": 2})
    stream = first + second

    assert decoder.feed(stream[:5]) == []
    assert decoder.feed(stream[5:len(first) + 3]) == [{"id": "a", "result": 1}]
    assert decoder.pending_bytes == 3
    assert decoder.feed(stream[len(first) + 3:]) == [{"id": "b", "result": 2}]
    assert decoder.pending_bytes == 0


def test_decoder_skips_blank_and_malformed_lines():
    decoder = LineDecoder()
    messages = decoder.feed(b'\n   \n{not json}\n[1, 2]\n{"id": "c"}\n')
    assert messages == [{"id": "c"}]


def test_decoder_discards_oversized_partial_frame():
    decoder = LineDecoder(max_frame_bytes=8)
    assert decoder.feed(b'{"id": "very-long-partial') == []
    assert decoder.pending_bytes == 0


def test_frames_are_single_lines():
    frame = encode_frame(Request(id="r1", method="job_status", params={"job_id": "job_1"}).to_wire())
    assert frame.endswith(b"\n")
    assert frame.count(b"\n") == 1


def test_response_wire_shapes():
    assert Response(id="r1", result={"ok": True}).to_wire() == {"id": "r1", "result": {"ok": True}}
    assert Response(id="r2", error="boom").to_wire() == {"id": "r2", "error": {"message": "boom"}}

    failed = parse_response({"id": "r2", "error": {"message": "boom"}})
    assert not failed.ok
    assert failed.error == "boom"
    assert parse_response({"id": "r3", "result": None}).ok


def test_parse_request_validation():
    assert parse_request({"id": "r1", "method": "list_jobs"}).params == {}
    with pytest.raises(ProtocolError):
        parse_request({"method": "list_jobs"})
    with pytest.raises(ProtocolError):
        parse_request({"id": "r1"})
    with pytest.raises(ProtocolError):
        parse_request({"id": "r1", "method": "submit_job", "params": ["prompt"]})
    with pytest.raises(ProtocolError):
        parse_response({"result": 1})
