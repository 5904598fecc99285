"""Wire markers and reserved-line escaping.

Every frame on the stream is a run of newline-terminated ASCII lines::

    TextLines     <line>* ---END---
    FileTransfer  FILE_TRANSFER_START:<name>:<size>  CHUNK:<seq>:<len>:<b64>*  FILE_TRANSFER_END
    Screenshot    SCREENSHOT_START:<size>  <b64 line>*  SCREENSHOT_END  ---END---

Marker lines are reserved. A text line that would read as a marker is sent
with a leading :data:`ESCAPE` character, which the receiver removes.
"""

from __future__ import annotations

from dataclasses import dataclass

END_OF_RESPONSE = "---END---"
FILE_START_PREFIX = "FILE_TRANSFER_START:"
FILE_END = "FILE_TRANSFER_END"
CHUNK_PREFIX = "CHUNK:"
SCREENSHOT_START_PREFIX = "SCREENSHOT_START:"
SCREENSHOT_END = "SCREENSHOT_END"
ERROR_PREFIX = "ERROR:"

ESCAPE = "\\"

_RESERVED_LINES = frozenset({END_OF_RESPONSE, FILE_END, SCREENSHOT_END})
_RESERVED_PREFIXES = (FILE_START_PREFIX, SCREENSHOT_START_PREFIX, CHUNK_PREFIX)


@dataclass
class FileStart:
    """Parsed ``FILE_TRANSFER_START`` marker."""

    name: str
    size: int


@dataclass
class ScreenshotStart:
    """Parsed ``SCREENSHOT_START`` marker."""

    size: int


def file_start_line(name: str, size: int) -> str:
    return f"{FILE_START_PREFIX}{name}:{size}"


def screenshot_start_line(size: int) -> str:
    return f"{SCREENSHOT_START_PREFIX}{size}"


def parse_file_start(line: str) -> FileStart | None:
    """Parse a file-start marker.

    The size is taken from the last ``:`` so names containing colons
    survive. Returns ``None`` if the line is not a well-formed marker.
    """
    if not line.startswith(FILE_START_PREFIX):
        return None
    name, sep, size_text = line[len(FILE_START_PREFIX):].rpartition(":")
    if not sep or not name:
        return None
    try:
        size = int(size_text)
    except ValueError:
        return None
    if size < 0:
        return None
    return FileStart(name=name, size=size)


def parse_screenshot_start(line: str) -> ScreenshotStart | None:
    """Parse a screenshot-start marker, or return ``None``."""
    if not line.startswith(SCREENSHOT_START_PREFIX):
        return None
    try:
        size = int(line[len(SCREENSHOT_START_PREFIX):])
    except ValueError:
        return None
    if size < 0:
        return None
    return ScreenshotStart(size=size)


def is_reserved(line: str) -> bool:
    """Return True if a stripped line could be taken for a marker."""
    return line in _RESERVED_LINES or line.startswith(_RESERVED_PREFIXES)


def escape_text_line(line: str) -> str:
    """Escape an outgoing text line that collides with a marker.

    The escape goes after any leading whitespace; the rest of the line is
    kept as is.
    """
    stripped = line.strip()
    if is_reserved(stripped.lstrip(ESCAPE)):
        indent = len(line) - len(line.lstrip())
        return line[:indent] + ESCAPE + line[indent:]
    return line


def unescape_text_line(line: str) -> str:
    """Undo :func:`escape_text_line` on a received text line."""
    stripped = line.strip()
    if stripped.startswith(ESCAPE) and is_reserved(stripped.lstrip(ESCAPE)):
        indent = len(line) - len(line.lstrip())
        return line[:indent] + line[indent + 1:]
    return line
