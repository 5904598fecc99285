"""Tests for the chunk codec."""

import base64

import pytest

from shellwire.protocol import codec
from shellwire.protocol.codec import (
    DecodeError,
    decode_chunk,
    decode_payload,
    encode_chunk,
    pad_payload,
    parse_chunk_line,
)


def test_encode_chunk_layout():
    """A chunk line carries seq, encoded length, payload and one newline."""
    line = encode_chunk(1, bytes(range(6)))
    assert line == "CHUNK:1:8:AAECAwQF\n"


def test_encode_empty_segment():
    """A zero-length segment still produces a well-formed line."""
    line = encode_chunk(3, b"")
    assert line == "CHUNK:3:0:\n"
    assert decode_chunk(line) == b""


def test_roundtrip_odd_lengths():
    """Segment lengths that are not multiples of 3 decode back exactly."""
    for size in (1, 2, 4, 5, 1000):
        segment = bytes((i * 7) & 0xFF for i in range(size))
        assert decode_chunk(encode_chunk(size, segment)) == segment


def test_parse_headered_line():
    chunk = parse_chunk_line("CHUNK:12:4:QUJD")
    assert chunk.seq == 12
    assert chunk.declared_length == 4
    assert chunk.payload == "QUJD"
    assert not chunk.legacy


def test_parse_legacy_line():
    """A line without the CHUNK header is a bare payload."""
    chunk = parse_chunk_line("  QUJD \r\n")
    assert chunk.legacy
    assert chunk.declared_length is None
    assert chunk.payload == "QUJD"


def test_legacy_line_decodes():
    assert decode_chunk(base64.b64encode(b"legacy data").decode()) == b"legacy data"


def test_missing_padding_is_repaired():
    """Payloads stripped of their '=' padding still decode."""
    assert decode_payload("QQ") == b"A"
    assert decode_payload("QUI") == b"AB"


def test_pad_payload_multiple_of_four():
    assert pad_payload("QQ") == "QQ=="
    assert pad_payload("QUJD") == "QUJD"
    assert pad_payload("") == ""


def test_embedded_line_breaks_are_removed():
    """CR/LF inserted by line-ending conversion are ignored."""
    assert decode_chunk("AAEC\r\nAwQF") == bytes(range(6))


def test_truncated_headered_chunk_rejected():
    """A payload shorter than its declared length is a decode error."""
    line = encode_chunk(1, bytes(range(6))).rstrip("\n")
    with pytest.raises(DecodeError):
        decode_chunk(line[:-1])


def test_corrupt_legacy_payload_rejected():
    """Five data characters can never be valid base64."""
    with pytest.raises(DecodeError):
        decode_chunk("AAECA")


def test_non_alphabet_rejected():
    with pytest.raises(DecodeError):
        decode_chunk("CHUNK:1:8:AAEC$wQF")


def test_malformed_header_rejected():
    with pytest.raises(DecodeError):
        decode_chunk("CHUNK:x:8:AAECAwQF")
    with pytest.raises(DecodeError):
        decode_chunk("CHUNK:1")


def test_decode_error_is_value_error():
    """Callers catching ValueError also catch chunk failures."""
    assert issubclass(DecodeError, ValueError)


def test_strategies_tried_in_order(monkeypatch):
    """A later strategy is used when the earlier ones fail."""
    calls = []

    def failing(payload):
        calls.append("failing")
        raise ValueError("nope")

    def succeeding(payload):
        calls.append("succeeding")
        return b"ok"

    monkeypatch.setattr(codec, "DECODE_STRATEGIES", (failing, succeeding))
    assert decode_payload("anything") == b"ok"
    assert calls == ["failing", "succeeding"]


def test_all_strategies_failing_raises(monkeypatch):
    def failing(payload):
        raise ValueError("nope")

    monkeypatch.setattr(codec, "DECODE_STRATEGIES", (failing, failing))
    with pytest.raises(DecodeError):
        decode_payload("QUJD")


def test_over_padded_payload_uses_unpadded_fallback():
    """Excess '=' defeats the strict decode; the no-padding variant recovers it."""
    with pytest.raises(ValueError):
        codec._decode_standard("QQ===")
    assert decode_payload("QQ===") == b"A"
    assert decode_chunk("CHUNK:1:5:QQ===") == b"A"
