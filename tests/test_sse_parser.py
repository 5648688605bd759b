"""Tests for the incremental text/event-stream framer."""
from __future__ import annotations

import json

from opencode_bridge.engine.event_stream import SSEFrameParser

STREAM = (
    'data: {"type":"server.connected","properties":{}}\n\n'
    ": keepalive\n\n"
    'event: message\ndata: {"type":"session.idle",\ndata: "properties":{"sessionID":"s1"}}\n\n'
    'data: {"type":"text","text":"café ✓"}\r\n\r\n'
).encode("utf-8")


def _feed_all(parser: SSEFrameParser, chunks: list[bytes]) -> list[str]:
    payloads: list[str] = []
    for chunk in chunks:
        payloads.extend(parser.feed(chunk))
    return payloads


def test_whole_stream_in_one_chunk():
    payloads = SSEFrameParser().feed(STREAM)

    assert len(payloads) == 3
    assert json.loads(payloads[0])["type"] == "server.connected"
    assert payloads[1] == '{"type":"session.idle",\n"properties":{"sessionID":"s1"}}'
    assert json.loads(payloads[2])["text"] == "café ✓"


def test_byte_at_a_time_matches_single_chunk():
    expected = SSEFrameParser().feed(STREAM)
    chunks = [STREAM[i:i + 1] for i in range(len(STREAM))]

    assert _feed_all(SSEFrameParser(), chunks) == expected


def test_every_two_way_split_matches_single_chunk():
    expected = SSEFrameParser().feed(STREAM)
    for cut in range(1, len(STREAM)):
        parser = SSEFrameParser()
        assert _feed_all(parser, [STREAM[:cut], STREAM[cut:]]) == expected, cut
        assert parser.pending == ""


def test_crlf_boundary_split_across_chunks():
    parser = SSEFrameParser()

    assert parser.feed(b"data: a\r\n") == []
    assert parser.feed(b"\r") == []
    assert parser.feed(b"\ndata: b\r\n\r\n") == ["a", "b"]


def test_multibyte_character_split_across_chunks():
    encoded = "data: ✓\n\n".encode("utf-8")
    split = encoded.index(b"\xe2") + 1
    parser = SSEFrameParser()

    assert parser.feed(encoded[:split]) == []
    assert parser.feed(encoded[split:]) == ["✓"]


def test_only_one_leading_space_is_stripped():
    parser = SSEFrameParser()

    assert parser.feed("data:x\n\ndata:  two\n\n") == ["x", " two"]


def test_records_without_data_are_skipped():
    parser = SSEFrameParser()

    assert parser.feed(": ping\n\nevent: noop\nid: 3\n\n") == []


def test_partial_record_stays_buffered_until_reset():
    parser = SSEFrameParser()

    assert parser.feed("data: half") == []
    assert parser.pending == "data: half"
    parser.reset()
    assert parser.pending == ""
    assert parser.feed("data: fresh\n\n") == ["fresh"]
