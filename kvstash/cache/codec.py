"""Serialize/deserialize boundary between callers and backends.

Backends only ever handle ``bytes``; the manager runs every value through a
codec on the way in and out.
"""

import json
from typing import Any, Protocol

from .errors import SerializationError


class PayloadCodec(Protocol):
    """Converts application values to payload bytes and back."""

    def encode(self, value: Any) -> bytes:
        ...

    def decode(self, payload: bytes) -> Any:
        ...


class JsonCodec:
    """UTF-8 JSON codec.

    Integers encode to plain ASCII digits, which is also the format counters
    are stored in, so ``get`` on a counter key yields an ``int``.
    """

    def __init__(self, ensure_ascii: bool = False):
        self.ensure_ascii = ensure_ascii

    def encode(self, value: Any) -> bytes:
        try:
            return json.dumps(
                value, ensure_ascii=self.ensure_ascii, separators=(",", ":")
            ).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Cannot encode {type(value).__name__}: {e}") from e

    def decode(self, payload: bytes) -> Any:
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError(f"Cannot decode payload: {e}") from e


def encode_counter(value: int) -> bytes:
    """Encode a counter as ASCII decimal text."""
    return str(int(value)).encode("ascii")


def decode_counter(payload: bytes) -> int:
    """Decode a counter payload, raising ValueError for non-integers."""
    text = payload.decode("ascii").strip()
    return int(text)
