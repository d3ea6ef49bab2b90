"""
Helpers over opaque feed payloads.

Feed data is arbitrary JSON. The core treats it as opaque and only these
helpers look at its shape: a sequence, a mapping, or a scalar.
"""

import json
from enum import Enum
from typing import Any

PREVIEW_SAMPLE_SIZE = 3
MAPPING_PREVIEW = {"sample": "Preview data available after subscription"}
SCALAR_PREVIEW = "Preview: Subscribe to access full data"


class PayloadShape(str, Enum):
    SEQUENCE = "sequence"
    MAPPING = "mapping"
    SCALAR = "scalar"


def classify(payload: Any) -> PayloadShape:
    if isinstance(payload, (list, tuple)):
        return PayloadShape.SEQUENCE
    if isinstance(payload, dict):
        return PayloadShape.MAPPING
    return PayloadShape.SCALAR


def preview_of(payload: Any) -> Any:
    """Bounded sample of a payload; never the payload itself unless it is a short sequence."""
    shape = classify(payload)
    if shape is PayloadShape.SEQUENCE:
        return list(payload[:PREVIEW_SAMPLE_SIZE])
    if shape is PayloadShape.MAPPING:
        return dict(MAPPING_PREVIEW)
    return SCALAR_PREVIEW


def placeholder_preview() -> dict:
    """Returned when the blob cannot be fetched for a preview."""
    return dict(MAPPING_PREVIEW)


def payload_size(payload: Any) -> int:
    """Size in bytes of the JSON encoding."""
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    if isinstance(payload, str):
        return len(payload.encode("utf-8"))
    return len(json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8"))


def encode(payload: Any) -> bytes:
    """Serialize a payload for upload: strings as-is, everything else as JSON."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, default=str).encode("utf-8")


def decode(raw: bytes) -> Any:
    """Parse a retrieved blob as JSON, falling back to text."""
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text
