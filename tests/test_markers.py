"""Tests for wire marker parsing and reserved-line escaping."""

from shellwire.protocol.markers import (
    END_OF_RESPONSE,
    escape_text_line,
    file_start_line,
    is_reserved,
    parse_file_start,
    parse_screenshot_start,
    unescape_text_line,
)


def test_file_start_roundtrip():
    parsed = parse_file_start(file_start_line("a.bin", 6))
    assert parsed is not None
    assert parsed.name == "a.bin"
    assert parsed.size == 6


def test_file_start_name_with_colon():
    """The size is taken from the last field."""
    parsed = parse_file_start("FILE_TRANSFER_START:C:report.txt:42")
    assert parsed.name == "C:report.txt"
    assert parsed.size == 42


def test_file_start_rejects_bad_size():
    assert parse_file_start("FILE_TRANSFER_START:a.bin:six") is None
    assert parse_file_start("FILE_TRANSFER_START:a.bin") is None
    assert parse_file_start("FILE_TRANSFER_START::6") is None
    assert parse_file_start("FILE_TRANSFER_START:a.bin:-1") is None


def test_screenshot_start():
    assert parse_screenshot_start("SCREENSHOT_START:1024").size == 1024
    assert parse_screenshot_start("SCREENSHOT_START:big") is None
    assert parse_screenshot_start("SCREENSHOT_START:1:2") is None
    assert parse_screenshot_start("hello") is None


def test_reserved_lines():
    assert is_reserved(END_OF_RESPONSE)
    assert is_reserved("FILE_TRANSFER_END")
    assert is_reserved("SCREENSHOT_START:5")
    assert is_reserved("CHUNK:1:4:QUJD")
    assert not is_reserved("dir listing")


def test_escape_only_touches_marker_lookalikes():
    assert escape_text_line("Volume in drive C") == "Volume in drive C"
    assert escape_text_line(r"\\server\share") == r"\\server\share"
    assert escape_text_line("---END---") == "\\---END---"
    assert escape_text_line("\\---END---") == "\\\\---END---"


def test_unescape_reverses_escape():
    for line in ("---END---", "\\---END---", "SCREENSHOT_END", "plain", r"\\server\share"):
        assert unescape_text_line(escape_text_line(line)) == line


def test_escape_keeps_surrounding_whitespace():
    assert escape_text_line("  ---END---  ") == "  \\---END---  "
    assert unescape_text_line("  \\---END---  ") == "  ---END---  "
    assert unescape_text_line(escape_text_line("\tFILE_TRANSFER_END")) == "\tFILE_TRANSFER_END"
