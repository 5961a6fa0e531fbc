"""SLIP byte-stuffing helpers.

Wire format::

    END (0xC0) <payload with END -> ESC ESC_END, ESC -> ESC ESC_ESC> END

Any byte other than ``ESC_END``/``ESC_ESC`` following ``ESC`` is a framing
violation: the partial frame is discarded and the reader leaves the frame.
"""

from __future__ import annotations

from typing import NamedTuple

from ..const import SLIP_END, SLIP_ESC, SLIP_ESC_END, SLIP_ESC_ESC
from .structures import SlipState

_ESCAPES = {SLIP_ESC_END: SLIP_END, SLIP_ESC_ESC: SLIP_ESC}


class SlipScan(NamedTuple):
    """Outcome of scanning buffered bytes inside a SLIP frame."""

    consumed: int
    frame: bytes | None = None
    discarded: int = 0
    violation: int | None = None


def slip_encode(payload: bytes | bytearray | memoryview) -> bytes:
    """Return *payload* escaped and wrapped in END delimiters."""
    out = bytearray([SLIP_END])
    for byte in bytes(payload):
        if byte == SLIP_END:
            out += bytes((SLIP_ESC, SLIP_ESC_END))
        elif byte == SLIP_ESC:
            out += bytes((SLIP_ESC, SLIP_ESC_ESC))
        else:
            out.append(byte)
    out.append(SLIP_END)
    return bytes(out)


def scan_frame(state: SlipState, data: bytes | bytearray | memoryview) -> SlipScan:
    """Advance *state* over *data* until a frame completes or a violation occurs.

    Must only be called while ``state.in_frame`` is true. Every byte read is
    reported in ``consumed``; unconsumed bytes stay with the caller.
    """
    for index, byte in enumerate(data):
        if state.escape_next:
            state.escape_next = False
            literal = _ESCAPES.get(byte)
            if literal is None:
                discarded = len(state.partial)
                state.clear()
                return SlipScan(index + 1, discarded=discarded, violation=byte)
            state.partial.append(literal)
            continue

        if byte == SLIP_END:
            if not state.partial:
                # Back-to-back END: the frame (re)starts here.
                continue
            frame = bytes(state.partial)
            state.clear()
            return SlipScan(index + 1, frame=frame)

        if byte == SLIP_ESC:
            state.escape_next = True
        else:
            state.partial.append(byte)

    return SlipScan(len(data))


__all__ = ["SlipScan", "scan_frame", "slip_encode"]
