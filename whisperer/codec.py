"""Application message codec contract and a JSON reference codec."""

from __future__ import annotations

from typing import Any, Generic, Protocol, TypeVar, runtime_checkable

import msgspec

T = TypeVar("T")


@runtime_checkable
class MessageCodec(Protocol):
    """Encodes outbound messages and decodes inbound frame payloads.

    ``decode`` must raise on malformed input; the decoder treats any
    exception as an undecodable frame.
    """

    def encode(self, message: Any) -> bytes: ...

    def decode(self, data: bytes) -> Any: ...


class RawCodec:
    """Pass-through codec: messages are the payload bytes themselves."""

    def encode(self, message: bytes | bytearray | memoryview) -> bytes:
        return bytes(message)

    def decode(self, data: bytes) -> bytes:
        return bytes(data)


class JsonCodec(Generic[T]):
    """msgspec-backed JSON codec, optionally validating against *type*."""

    def __init__(self, type: Any = Any) -> None:
        self._encoder = msgspec.json.Encoder()
        self._decoder: msgspec.json.Decoder[T] = msgspec.json.Decoder(type)

    def encode(self, message: Any) -> bytes:
        return self._encoder.encode(message)

    def decode(self, data: bytes) -> T:
        return self._decoder.decode(data)


class MsgpackCodec(Generic[T]):
    """msgspec-backed MessagePack codec."""

    def __init__(self, type: Any = Any) -> None:
        self._encoder = msgspec.msgpack.Encoder()
        self._decoder: msgspec.msgpack.Decoder[T] = msgspec.msgpack.Decoder(type)

    def encode(self, message: Any) -> bytes:
        return self._encoder.encode(message)

    def decode(self, data: bytes) -> T:
        return self._decoder.decode(data)


__all__ = ["JsonCodec", "MessageCodec", "MsgpackCodec", "RawCodec"]
