"""
Value Codec: JSON With Optional LZ4 Compression

Encoded layout:
    [1-byte marker][body]
    marker 0x00: body is UTF-8 JSON
    marker 0x01: body is an LZ4 frame of UTF-8 JSON

Values whose JSON exceeds the threshold are compressed.
"""

from __future__ import annotations

import json
from typing import Any

import lz4.frame

from persist.core.constants import COMPRESSION_THRESHOLD_BYTES

MARKER_PLAIN = 0x00
MARKER_LZ4 = 0x01


def encode_value(
    value: Any,
    compress: bool = True,
    threshold: int = COMPRESSION_THRESHOLD_BYTES,
) -> bytes:
    """Serialize a JSON-compatible value."""
    data = json.dumps(value, separators=(",", ":")).encode("utf-8")

    if compress and len(data) > threshold:
        return bytes([MARKER_LZ4]) + lz4.frame.compress(data)
    return bytes([MARKER_PLAIN]) + data


def decode_value(data: bytes) -> Any:
    """
    Deserialize bytes produced by encode_value.

    Raises:
        ValueError: empty input, unknown marker, or malformed body.
    """
    if len(data) == 0:
        raise ValueError("Empty value data")

    marker, body = data[0], data[1:]
    if marker == MARKER_LZ4:
        try:
            body = lz4.frame.decompress(body)
        except RuntimeError as e:
            raise ValueError(f"Invalid LZ4 frame: {e}") from e
    elif marker != MARKER_PLAIN:
        raise ValueError(f"Unknown value marker 0x{marker:02x}")

    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Invalid JSON value: {e}") from e
