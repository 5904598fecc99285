"""Chunk codec: binary segments as text-safe lines.

Chunk line layout::

    CHUNK:<seq>:<encodedLen>:<base64 payload>\\n

- seq: 1-based sequence number within a file frame
- encodedLen: length of the base64 payload in characters
- payload: standard-alphabet base64 of the segment

The header is optional on receive. A bare base64 line (as sent by older
agents) decodes the same way, without the length check.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable
from dataclasses import dataclass

from .markers import CHUNK_PREFIX

PAD = "="


class DecodeError(ValueError):
    """A single chunk could not be decoded. Recoverable."""


@dataclass
class Chunk:
    """A parsed chunk line."""

    seq: int | None
    declared_length: int | None
    payload: str

    @property
    def legacy(self) -> bool:
        return self.seq is None


def encode_chunk(seq: int, segment: bytes) -> str:
    """Encode one segment as a newline-terminated chunk line.

    Args:
        seq: 1-based sequence number.
        segment: Raw bytes of any length, including zero.
    """
    encoded = base64.b64encode(segment).decode("ascii")
    return f"{CHUNK_PREFIX}{seq}:{len(encoded)}:{encoded}\n"


def clean_payload(payload: str) -> str:
    """Remove surrounding whitespace and any embedded CR/LF."""
    return payload.strip().replace("\r", "").replace("\n", "")


def pad_payload(payload: str) -> str:
    """Right-pad with ``=`` to a multiple of four characters."""
    return payload + PAD * (-len(payload) % 4)


def _decode_standard(payload: str) -> bytes:
    return base64.b64decode(pad_payload(payload), validate=True)


def _decode_unpadded(payload: str) -> bytes:
    return base64.b64decode(pad_payload(payload.rstrip(PAD)), validate=True)


# Tried in order; each must be pure and raise on failure.
DECODE_STRATEGIES: tuple[Callable[[str], bytes], ...] = (
    _decode_standard,
    _decode_unpadded,
)


def decode_payload(payload: str) -> bytes:
    """Decode base64 text using the fallback strategies.

    Raises:
        DecodeError: If no strategy accepts the payload.
    """
    text = clean_payload(payload)
    last_error: Exception | None = None
    for strategy in DECODE_STRATEGIES:
        try:
            return strategy(text)
        except (binascii.Error, ValueError) as e:
            last_error = e
    raise DecodeError(f"invalid base64 payload ({len(text)} chars): {last_error}")


def parse_chunk_line(line: str) -> Chunk:
    """Split a chunk line into header fields and payload.

    Lines without the ``CHUNK:`` prefix are legacy bare payloads.

    Raises:
        DecodeError: If the line has the prefix but a malformed header.
    """
    text = line.strip()
    if not text.startswith(CHUNK_PREFIX):
        return Chunk(seq=None, declared_length=None, payload=text)

    parts = text[len(CHUNK_PREFIX):].split(":", 2)
    if len(parts) != 3:
        raise DecodeError(f"malformed chunk header: {text[:40]!r}")
    try:
        seq = int(parts[0])
        declared_length = int(parts[1])
    except ValueError as e:
        raise DecodeError(f"malformed chunk header: {text[:40]!r}") from e
    return Chunk(seq=seq, declared_length=declared_length, payload=parts[2])


def decode_chunk(line: str) -> bytes:
    """Decode a chunk line (headered or legacy) to raw bytes.

    When a header is present its encoded length must match the cleaned
    payload, which catches payloads truncated in transit.

    Raises:
        DecodeError: If the header is malformed, the length disagrees, or
            the payload is not valid base64.
    """
    chunk = parse_chunk_line(line)
    payload = clean_payload(chunk.payload)
    if chunk.declared_length is not None and chunk.declared_length != len(payload):
        raise DecodeError(
            f"chunk {chunk.seq}: declared {chunk.declared_length} chars, "
            f"got {len(payload)}"
        )
    return decode_payload(payload)
