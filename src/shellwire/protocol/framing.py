"""Agent-side frame encoder.

Serializes one response unit onto the connection::

    text        <line>... ---END---
    file        FILE_TRANSFER_START:<name>:<size>
                CHUNK:<seq>:<len>:<b64>...
                FILE_TRANSFER_END
    screenshot  SCREENSHOT_START:<size>
                <b64, LINE_LENGTH chars per line>...
                SCREENSHOT_END
                ---END---

Each line is written as soon as it is built. Any write failure raises
``ConnectionError`` out of the frame; the connection is assumed dead and
nothing is retried here.
"""

from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Protocol

from .codec import encode_chunk
from .markers import (
    END_OF_RESPONSE,
    ERROR_PREFIX,
    FILE_END,
    SCREENSHOT_END,
    escape_text_line,
    file_start_line,
    screenshot_start_line,
)

logger = logging.getLogger(__name__)

FILE_SEGMENT_SIZE = 32 * 1024
SCREENSHOT_LINE_LENGTH = 1024


class LineSink(Protocol):
    def write_line(self, line: str) -> None: ...


def coerce_text(output: bytes | str) -> str:
    """Return output as text, replacing invalid UTF-8 sequences."""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class FrameWriter:
    """Writes framed responses to a line connection.

    Args:
        conn: Anything with ``write_line(str)``, normally a
            :class:`~shellwire.transport.tcp_connection.LineConnection`.
        segment_size: Raw bytes per file chunk.
        line_length: Base64 characters per screenshot line.
    """

    def __init__(
        self,
        conn: LineSink,
        segment_size: int = FILE_SEGMENT_SIZE,
        line_length: int = SCREENSHOT_LINE_LENGTH,
    ) -> None:
        if segment_size <= 0:
            raise ValueError(f"segment_size must be positive, got {segment_size}")
        if line_length <= 0:
            raise ValueError(f"line_length must be positive, got {line_length}")
        self._conn = conn
        self._segment_size = segment_size
        self._line_length = line_length

    def write_text(self, output: bytes | str, error: object | None = None) -> int:
        """Write a text frame.

        Args:
            output: Command output, raw or decoded.
            error: If the command failed, its error; it is prepended to
                whatever output was produced.

        Returns:
            Number of body lines written.
        """
        text = coerce_text(output)
        if error is not None:
            text = f"Error executing command: {error}\n{text}"

        written = 0
        for line in text.split("\n"):
            line = line.rstrip("\r")
            if not line:
                continue
            self._conn.write_line(escape_text_line(line))
            written += 1
        self._conn.write_line(END_OF_RESPONSE)
        return written

    def write_file(self, path: str | Path) -> bool:
        """Stream a file as a chunked file frame.

        A file that cannot be opened is reported with a text frame instead.
        A read error mid-transfer writes an ``ERROR:`` notice and leaves the
        frame without its end marker.

        Returns:
            True if the end marker was written.
        """
        path = Path(path)
        try:
            handle = open(path, "rb")
        except FileNotFoundError:
            self.write_text(f"File not found: {path}\n")
            return False
        except OSError as e:
            self.write_text(f"Failed to open file: {e}\n")
            return False

        with handle:
            try:
                size = os.fstat(handle.fileno()).st_size
            except OSError as e:
                self.write_text(f"Failed to get file info: {e}\n")
                return False

            name = path.name
            self._conn.write_line(file_start_line(name, size))

            sent = 0
            seq = 0
            last_decile = 0
            while True:
                try:
                    segment = handle.read(self._segment_size)
                except OSError as e:
                    logger.error("Read of %s failed after %d bytes: %s", name, sent, e)
                    self._conn.write_line(f"{ERROR_PREFIX}Failed to read file: {e}")
                    return False
                if not segment:
                    break

                seq += 1
                self._conn.write_line(encode_chunk(seq, segment))
                sent += len(segment)

                if size:
                    percent = sent * 100 // size
                    if percent // 10 > last_decile or percent == 100:
                        logger.info(
                            "File transfer progress: %d%% (%d/%d bytes, chunk: %d)",
                            percent, sent, size, seq,
                        )
                        last_decile = percent // 10

            self._conn.write_line(FILE_END)

        logger.info("File sent: %s (%d bytes, %d chunks)", name, sent, seq)
        return True

    def write_screenshot(self, image: bytes) -> int:
        """Write an already-encoded image as a screenshot frame.

        Returns:
            Number of payload lines written.
        """
        self._conn.write_line(screenshot_start_line(len(image)))
        encoded = base64.b64encode(image).decode("ascii")
        lines = 0
        for offset in range(0, len(encoded), self._line_length):
            self._conn.write_line(encoded[offset : offset + self._line_length])
            lines += 1
        self._conn.write_line(SCREENSHOT_END)
        self._conn.write_line(END_OF_RESPONSE)
        logger.info("Screenshot sent (%d bytes, %d lines)", len(image), lines)
        return lines
