"""Length-prefixed binary framing.

Frame Structure::

    [Header (N bytes, optional)] [Length (2 bytes, big-endian)] [Payload]

The header is a fixed magic byte sequence configured per engine; an empty
header means frames start at the head of the buffer. The payload is handed
verbatim to the application codec.
"""

from __future__ import annotations

from typing import Any, NamedTuple

from construct import GreedyBytes, Int16ub, Prefixed  # type: ignore

from ..const import LENGTH_PREFIX_SIZE, MAX_FRAME_PAYLOAD

LENGTH_PREFIXED: Any = Prefixed(Int16ub, GreedyBytes)


class FrameSlice(NamedTuple):
    """A complete length-prefixed frame located in a buffer."""

    payload: bytes
    size: int


def wrap_length_prefixed(payload: bytes | bytearray | memoryview, header: bytes = b"") -> bytes:
    """Build ``header + u16be(len(payload)) + payload``."""
    data = bytes(payload)
    if len(data) > MAX_FRAME_PAYLOAD:
        raise ValueError(f"Payload too large ({len(data)} bytes); max is {MAX_FRAME_PAYLOAD}")
    return header + LENGTH_PREFIXED.build(data)


def find_header(buffer: bytes | bytearray, header: bytes, start: int = 0) -> int:
    """Return the first index at which *header* matches consecutively, or -1.

    An empty header matches at *start* whenever the buffer is non-empty.
    """
    if not header:
        return start if len(buffer) > start else -1
    return buffer.find(header, start)


def extract_frame(buffer: bytes | bytearray, header_length: int) -> FrameSlice | None:
    """Slice the frame starting at the head of *buffer*.

    The caller guarantees the header (if any) sits at offset zero. Returns
    ``None`` while the length field or the payload is still incomplete.
    """
    prefix_end = header_length + LENGTH_PREFIX_SIZE
    if len(buffer) < prefix_end:
        return None
    length = Int16ub.parse(bytes(buffer[header_length:prefix_end]))
    total = prefix_end + length
    if len(buffer) < total:
        return None
    return FrameSlice(bytes(buffer[prefix_end:total]), total)


__all__ = ["FrameSlice", "LENGTH_PREFIXED", "extract_frame", "find_header", "wrap_length_prefixed"]
