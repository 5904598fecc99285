"""Console-side stream demultiplexer.

A single-pass state machine over received lines::

    IDLE --FILE_TRANSFER_START--> RECEIVING_FILE --FILE_TRANSFER_END--> IDLE
    IDLE --SCREENSHOT_START-----> RECEIVING_SCREENSHOT --SCREENSHOT_END--> IDLE

While idle, ``---END---`` closes a text response and every other line is
command output. Start markers are only recognized while idle; inside a
transfer they are body content like any other line.

All reassembly state lives in a :class:`DemuxState` value that is passed to
:func:`process_line`, so the machine can be driven without a socket.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum

from ..models.events import (
    ChunkRejected,
    FileArtifact,
    FileReceived,
    FrameKind,
    ResponseComplete,
    ScreenshotArtifact,
    ScreenshotReceived,
    TextLine,
    TransferAborted,
    TransferProgress,
    TransferStarted,
)
from .codec import DecodeError, decode_chunk
from .markers import (
    CHUNK_PREFIX,
    END_OF_RESPONSE,
    FILE_END,
    SCREENSHOT_END,
    parse_file_start,
    parse_screenshot_start,
    unescape_text_line,
)

logger = logging.getLogger(__name__)

PROGRESS_CHUNK_INTERVAL = 50


class Phase(Enum):
    IDLE = "idle"
    RECEIVING_FILE = "receiving_file"
    RECEIVING_SCREENSHOT = "receiving_screenshot"


@dataclass
class ReassemblyBuffer:
    """Accumulator for the one frame currently being received."""

    kind: FrameKind
    expected_size: int
    name: str = ""
    data: bytearray = field(default_factory=bytearray)
    encoded: list[str] = field(default_factory=list)
    chunks: int = 0
    decode_errors: int = 0
    last_percent: int = 0
    started_at: float = field(default_factory=time.monotonic)

    @property
    def received(self) -> int:
        if self.kind is FrameKind.SCREENSHOT:
            return sum(len(part) for part in self.encoded)
        return len(self.data)


@dataclass
class DemuxState:
    """Everything the demultiplexer remembers between lines."""

    phase: Phase = Phase.IDLE
    buffer: ReassemblyBuffer | None = None
    progress_interval: int = PROGRESS_CHUNK_INTERVAL

    @property
    def idle(self) -> bool:
        return self.phase is Phase.IDLE

    def reset(self) -> None:
        self.phase = Phase.IDLE
        self.buffer = None


def process_line(state: DemuxState, line: str) -> list:
    """Classify one received line and advance the state machine.

    Args:
        state: Reassembly state owned by the caller.
        line: One line from the stream, with or without its terminator.

    Returns:
        The events produced by this line, possibly empty.
    """
    text = line.rstrip("\r\n")
    if state.phase is Phase.RECEIVING_FILE:
        return _file_line(state, text)
    if state.phase is Phase.RECEIVING_SCREENSHOT:
        return _screenshot_line(state, text)
    return _idle_line(state, text)


def abort(state: DemuxState, reason: str) -> list:
    """Discard any live transfer and return to idle (forced resync)."""
    buf = state.buffer
    state.reset()
    if buf is None:
        return []
    logger.warning(
        "Discarding %s transfer %r after %d bytes: %s",
        buf.kind.value, buf.name, buf.received, reason,
    )
    return [TransferAborted(kind=buf.kind, reason=reason, received=buf.received)]


def _idle_line(state: DemuxState, text: str) -> list:
    key = text.strip()

    file_start = parse_file_start(key)
    if file_start is not None:
        state.phase = Phase.RECEIVING_FILE
        state.buffer = ReassemblyBuffer(
            kind=FrameKind.FILE,
            expected_size=file_start.size,
            name=file_start.name,
        )
        logger.info("Receiving file %s (%d bytes)", file_start.name, file_start.size)
        return [TransferStarted(kind=FrameKind.FILE, size=file_start.size, name=file_start.name)]

    shot_start = parse_screenshot_start(key)
    if shot_start is not None:
        state.phase = Phase.RECEIVING_SCREENSHOT
        state.buffer = ReassemblyBuffer(kind=FrameKind.SCREENSHOT, expected_size=shot_start.size)
        logger.info("Receiving screenshot (%d bytes)", shot_start.size)
        return [TransferStarted(kind=FrameKind.SCREENSHOT, size=shot_start.size)]

    if key == END_OF_RESPONSE:
        return [ResponseComplete()]

    return [TextLine(text=unescape_text_line(text))]


def _file_line(state: DemuxState, text: str) -> list:
    buf = state.buffer
    key = text.strip()

    if key == FILE_END:
        state.reset()
        artifact = FileArtifact(
            name=buf.name,
            declared_size=buf.expected_size,
            data=bytes(buf.data),
            chunks=buf.chunks,
            decode_errors=buf.decode_errors,
            elapsed=time.monotonic() - buf.started_at,
        )
        if buf.decode_errors:
            logger.warning(
                "File %s completed with %d undecodable chunks",
                buf.name, buf.decode_errors,
            )
        return [FileReceived(artifact=artifact)]

    if not key:
        return []

    try:
        segment = decode_chunk(key)
    except DecodeError as e:
        buf.decode_errors += 1
        logger.debug("Skipping chunk in %s: %s", buf.name, e)
        return [ChunkRejected(seq=_chunk_seq(key), reason=str(e))]

    buf.data.extend(segment)
    buf.chunks += 1
    return _progress(state, buf)


def _screenshot_line(state: DemuxState, text: str) -> list:
    buf = state.buffer
    key = text.strip()

    if key == SCREENSHOT_END:
        state.reset()
        artifact = ScreenshotArtifact(
            declared_size=buf.expected_size,
            encoded="".join(buf.encoded),
            lines=buf.chunks,
        )
        return [ScreenshotReceived(artifact=artifact)]

    buf.encoded.append(key)
    buf.chunks += 1
    return []


def _progress(state: DemuxState, buf: ReassemblyBuffer) -> list:
    percent = None
    if buf.expected_size > 0:
        percent = min(100, buf.received * 100 // buf.expected_size)

    crossed = percent is not None and percent != buf.last_percent
    periodic = buf.chunks % state.progress_interval == 0
    if not (crossed or periodic):
        return []
    if percent is not None:
        buf.last_percent = percent
    return [
        TransferProgress(
            name=buf.name,
            received=buf.received,
            expected=buf.expected_size,
            chunks=buf.chunks,
            percent=percent,
        )
    ]


def _chunk_seq(key: str) -> int | None:
    if not key.startswith(CHUNK_PREFIX):
        return None
    seq = key[len(CHUNK_PREFIX):].split(":", 1)[0]
    return int(seq) if seq.isdigit() else None


class StreamDemultiplexer:
    """Owns the reassembly state for one connection.

    Usage::

        demux = StreamDemultiplexer()
        for line in lines:
            for event in demux.feed(line):
                materializer.handle(event)
    """

    def __init__(self, progress_interval: int = PROGRESS_CHUNK_INTERVAL) -> None:
        self._state = DemuxState(progress_interval=progress_interval)

    @property
    def state(self) -> DemuxState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def idle(self) -> bool:
        return self._state.idle

    def feed(self, line: str) -> list:
        return process_line(self._state, line)

    def abort(self, reason: str) -> list:
        return abort(self._state, reason)
