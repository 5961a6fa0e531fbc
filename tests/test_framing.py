"""Tests for length-prefixed framing helpers."""

from __future__ import annotations

import pytest

from whisperer.codec import RawCodec
from whisperer.decoder import FrameDecoder
from whisperer.protocol.framing import extract_frame, find_header, wrap_length_prefixed
from whisperer.protocol.structures import DecodedMessage

HEADER = b"\xaa\x55"


def test_wrap_prepends_header_and_big_endian_length() -> None:
    assert wrap_length_prefixed(b"\x01\x02\x03", HEADER) == b"\xaa\x55\x00\x03\x01\x02\x03"
    assert wrap_length_prefixed(b"", b"") == b"\x00\x00"


def test_wrap_rejects_oversized_payload() -> None:
    with pytest.raises(ValueError, match="too large"):
        wrap_length_prefixed(bytes(0x10000))


def test_find_header_exact_match() -> None:
    buffer = b"\xaa\x00\xaa\x55\x00"
    assert find_header(buffer, HEADER) == 2
    assert find_header(buffer, HEADER, 3) == -1
    assert find_header(b"", b"") == -1
    assert find_header(b"\x01", b"") == 0


def test_extract_waits_for_length_and_payload() -> None:
    frame = wrap_length_prefixed(b"hello", HEADER)

    assert extract_frame(frame[:3], len(HEADER)) is None
    assert extract_frame(frame[:-1], len(HEADER)) is None

    sliced = extract_frame(frame + b"\xff", len(HEADER))
    assert sliced is not None
    assert sliced.payload == b"hello"
    assert sliced.size == len(frame)


@pytest.mark.parametrize("length", [0, 1, 2, 255, 256, 4096, 0xFFFF])
def test_decoder_recovers_any_payload_length(length: int) -> None:
    payload = bytes((index * 7) & 0xFF for index in range(length))
    decoder = FrameDecoder(codec=RawCodec(), header=HEADER)

    events = decoder.feed(wrap_length_prefixed(payload, HEADER))

    assert events == [DecodedMessage(message=payload, payload=payload)]
    assert decoder.raw_buffer == b""
