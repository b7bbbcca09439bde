"""
Payload compression helpers.

Cached values are pickled and zlib-compressed (same serialization the
storage layer uses). Broadcast payloads travel through the change feed as
JSON, so they are wrapped in a JSON-safe envelope instead.
"""

from __future__ import annotations

import base64
import json
import pickle
import zlib
from dataclasses import dataclass
from typing import Any

COMPRESSED_MARKER = "__compressed"


@dataclass(frozen=True)
class CompressedValue:
    """Compressed pickle of a cached value."""

    blob: bytes
    original_size: int

    @property
    def savings(self) -> int:
        return max(0, self.original_size - len(self.blob))


def compress_value(value: Any) -> CompressedValue:
    raw = pickle.dumps(value)
    return CompressedValue(blob=zlib.compress(raw), original_size=len(raw))


def decompress_value(value: Any) -> Any:
    """Return the original value; non-compressed values pass through."""
    if isinstance(value, CompressedValue):
        return pickle.loads(zlib.decompress(value.blob))
    return value


def compress_payload(payload: Any) -> dict[str, Any]:
    """Wrap a JSON-serializable payload in a compressed envelope."""
    original = json.dumps(payload, separators=(",", ":"), default=str)
    packed = base64.b64encode(zlib.compress(original.encode("utf-8"))).decode("ascii")
    return {COMPRESSED_MARKER: True, "data": packed, "originalSize": len(original)}


def is_compressed_payload(payload: Any) -> bool:
    return isinstance(payload, dict) and payload.get(COMPRESSED_MARKER) is True


def decompress_payload(payload: Any) -> Any:
    """Unwrap an envelope built by compress_payload; other payloads pass through."""
    if not is_compressed_payload(payload):
        return payload
    raw = zlib.decompress(base64.b64decode(payload["data"]))
    return json.loads(raw.decode("utf-8"))
