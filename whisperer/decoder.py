"""Per-connection byte-stream decoder.

A :class:`FrameDecoder` turns arbitrarily chunked input into an ordered list
of events. For a given byte sequence the output does not depend on how the
sequence was split into chunks: every decision is taken only once the bytes
that determine it are buffered.

Binary mode (a codec is configured or SLIP is enabled) evaluates, per
iteration:

1. SLIP, which owns every byte while a frame is open;
2. whichever construct starts first in the buffer: a complete text line,
   a SLIP delimiter or a length-prefixed frame header;
3. a garbage skip when a frame start sits beyond the buffer head.

Line mode (no codec, no SLIP) accumulates decoded text and emits one
:class:`TextLine` per non-empty line.
"""

from __future__ import annotations

import codecs
import logging
import threading
from collections.abc import Callable
from typing import Any

from .codec import MessageCodec
from .const import (
    DEFAULT_TEXT_ENCODING,
    GARBAGE_PREVIEW_BYTES,
    LINE_TERMINATOR,
    SLIP_END,
)
from .errors import FrameDecodeError
from .protocol.framing import extract_frame, find_header
from .protocol.slip import scan_frame
from .protocol.structures import (
    DecodedEvent,
    DecodedMessage,
    LogLevel,
    SlipFrame,
    SlipState,
    TextLine,
)
from .state.stats import LinkStats

logger = logging.getLogger("whisperer.decoder")

DiagnosticSink = Callable[[LogLevel, str], None]


def hex_preview(data: bytes | bytearray, limit: int = GARBAGE_PREVIEW_BYTES) -> str:
    return " ".join(f"{byte:02x}" for byte in bytes(data[:limit]))


class FrameDecoder:
    """Receive-buffer state machine for one connection."""

    def __init__(
        self,
        uuid: str = "",
        *,
        codec: MessageCodec | None = None,
        header: bytes = b"",
        slip: bool = False,
        encoding: str = DEFAULT_TEXT_ENCODING,
        on_diagnostic: DiagnosticSink | None = None,
        stats: LinkStats | None = None,
    ) -> None:
        self.uuid = uuid
        self.codec = codec
        self.header = bytes(header)
        self.slip_enabled = slip
        self.encoding = codecs.lookup(encoding).name
        self.stats = stats if stats is not None else LinkStats()
        self._on_diagnostic = on_diagnostic
        self._buffer = bytearray()
        self._slip = SlipState()
        self._text_leftover = ""
        self._text_decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        self._lock = threading.RLock()
        self._active = False

    @property
    def line_mode(self) -> bool:
        return self.codec is None and not self.slip_enabled

    @property
    def raw_buffer(self) -> bytes:
        return bytes(self._buffer)

    @property
    def text_leftover(self) -> str:
        return self._text_leftover

    @property
    def slip_state(self) -> SlipState:
        return SlipState(
            in_frame=self._slip.in_frame,
            escape_next=self._slip.escape_next,
            partial=bytearray(self._slip.partial),
        )

    def decode_payload(self, payload: bytes) -> Any:
        """Run the codec over *payload*; any codec failure becomes FrameDecodeError."""
        if self.codec is None:
            raise FrameDecodeError(f"no codec configured for {self.uuid or 'connection'}")
        try:
            return self.codec.decode(payload)
        except Exception as exc:
            raise FrameDecodeError(f"{len(payload)}-byte payload rejected by codec: {exc}") from exc

    def reset(self) -> None:
        """Forget all buffered input. Only called on an explicit reconnect."""
        with self._lock:
            self._buffer.clear()
            self._slip.clear()
            self._text_leftover = ""
            self._text_decoder.reset()

    def feed(self, chunk: bytes | bytearray | memoryview | str) -> list[DecodedEvent]:
        """Append *chunk* and return every event it completes, in order."""
        with self._lock:
            if self._active:
                raise RuntimeError(f"decode pass already in flight for {self.uuid or 'connection'}")
            self._active = True
            try:
                data = chunk.encode(self.encoding) if isinstance(chunk, str) else bytes(chunk)
                self.stats.bytes_received += len(data)
                if self.line_mode:
                    return self._feed_lines(data)
                self._buffer += data
                return self._drain()
            finally:
                self._active = False

    # --- line mode --------------------------------------------------------

    def _feed_lines(self, data: bytes) -> list[DecodedEvent]:
        combined = self._text_leftover + self._text_decoder.decode(data)
        *lines, self._text_leftover = combined.split("\n")
        events: list[DecodedEvent] = []
        for line in lines:
            text = line.strip()
            if text:
                events.append(TextLine(text))
        self.stats.text_lines += len(events)
        return events

    # --- binary mode ------------------------------------------------------

    def _drain(self) -> list[DecodedEvent]:
        events: list[DecodedEvent] = []
        while self._buffer:
            if self.slip_enabled and self._slip.in_frame:
                if not self._step_slip(events):
                    break
                continue
            if not self._step(events):
                break
        return events

    def _step_slip(self, events: list[DecodedEvent]) -> bool:
        scan = scan_frame(self._slip, self._buffer)
        del self._buffer[: scan.consumed]
        if scan.frame is not None:
            self.stats.slip_frames += 1
            events.append(SlipFrame(scan.frame))
            return True
        if scan.violation is not None:
            self.stats.decode_errors += 1
            self._diagnose(
                LogLevel.WARNING,
                f"[!] SLIP framing error: 0x{scan.violation:02x} after ESC; "
                f"discarded partial frame ({scan.discarded} bytes)",
            )
            return True
        return False

    def _step(self, events: list[DecodedEvent]) -> bool:
        buffer = self._buffer
        slip_pos = buffer.find(SLIP_END) if self.slip_enabled else -1
        header_pos = find_header(buffer, self.header) if self.codec is not None else -1
        starts = [pos for pos in (slip_pos, header_pos) if pos >= 0]
        frame_pos = min(starts) if starts else -1
        newline_pos = buffer.find(LINE_TERMINATOR)

        if newline_pos >= 0 and (frame_pos < 0 or newline_pos < frame_pos):
            if self._header_may_start_before(newline_pos):
                return False
            self._emit_line(newline_pos, events)
            return True

        if frame_pos < 0:
            return False

        if frame_pos > 0:
            self._skip_garbage(frame_pos)
            return True

        if slip_pos == 0:
            del buffer[:1]
            self._slip.in_frame = True
            return True

        return self._take_length_prefixed(events)

    def _header_may_start_before(self, limit: int) -> bool:
        """True when an incomplete header at the buffer tail begins at or before *limit*."""
        if self.codec is None or len(self.header) < 2:
            return False
        tail_start = max(0, len(self._buffer) - len(self.header) + 1)
        for pos in range(tail_start, min(limit, len(self._buffer) - 1) + 1):
            if self.header.startswith(bytes(self._buffer[pos:])):
                return True
        return False

    def _emit_line(self, newline_pos: int, events: list[DecodedEvent]) -> None:
        line = bytes(self._buffer[:newline_pos])
        del self._buffer[: newline_pos + 1]
        text = line.decode(self.encoding, errors="replace").strip()
        if text:
            self.stats.text_lines += 1
            events.append(TextLine(text))

    def _skip_garbage(self, frame_pos: int) -> None:
        garbage = bytes(self._buffer[:frame_pos])
        del self._buffer[:frame_pos]
        self.stats.garbage_bytes += len(garbage)
        self._diagnose(
            LogLevel.WARNING,
            f"[!] Skipped invalid bytes before frame header: {hex_preview(garbage)}... ({len(garbage)} bytes)",
        )

    def _take_length_prefixed(self, events: list[DecodedEvent]) -> bool:
        frame = extract_frame(self._buffer, len(self.header))
        if frame is None:
            return False
        try:
            message = self.decode_payload(frame.payload)
        except FrameDecodeError as exc:
            # Possibly a false-positive header: give up one byte and rescan.
            del self._buffer[:1]
            self.stats.decode_errors += 1
            self._diagnose(
                LogLevel.WARNING,
                f"[!] Undecodable {len(frame.payload)}-byte frame ({exc.__cause__ or exc}); dropped 1 byte to resync",
            )
            return True
        del self._buffer[: frame.size]
        self.stats.messages_decoded += 1
        events.append(DecodedMessage(message=message, payload=frame.payload))
        return True

    def _diagnose(self, level: LogLevel, message: str) -> None:
        self.stats.mark()
        logger.log(
            logging.ERROR if level == LogLevel.ERROR else logging.WARNING,
            "%s %s",
            self.uuid or "-",
            message,
        )
        if self._on_diagnostic is not None:
            self._on_diagnostic(level, message)


__all__ = ["DiagnosticSink", "FrameDecoder", "hex_preview"]
