"""Events emitted by the stream demultiplexer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FrameKind(Enum):
    """Payload kinds multiplexed on one connection."""

    TEXT = "text"
    FILE = "file"
    SCREENSHOT = "screenshot"


@dataclass
class TextLine:
    """One line of command output."""

    text: str


@dataclass
class ResponseComplete:
    """The agent finished responding to a command."""


@dataclass
class TransferStarted:
    kind: FrameKind
    size: int
    name: str = ""


@dataclass
class TransferProgress:
    """Coarse progress of an in-flight file transfer."""

    name: str
    received: int
    expected: int
    chunks: int
    percent: int | None = None


@dataclass
class ChunkRejected:
    """A chunk failed to decode and was skipped."""

    seq: int | None
    reason: str


@dataclass
class FileArtifact:
    """A completed file frame."""

    name: str
    declared_size: int
    data: bytes
    chunks: int = 0
    decode_errors: int = 0
    elapsed: float = 0.0

    @property
    def size_mismatch(self) -> bool:
        return len(self.data) != self.declared_size

    def __repr__(self) -> str:
        return (
            f"FileArtifact(name={self.name!r}, declared={self.declared_size}, "
            f"received={len(self.data)}, errors={self.decode_errors})"
        )


@dataclass
class ScreenshotArtifact:
    """A completed screenshot frame, still base64 text."""

    declared_size: int
    encoded: str
    lines: int = 0

    def __repr__(self) -> str:
        return (
            f"ScreenshotArtifact(declared={self.declared_size}, "
            f"encoded_len={len(self.encoded)})"
        )


@dataclass
class FileReceived:
    artifact: FileArtifact


@dataclass
class ScreenshotReceived:
    artifact: ScreenshotArtifact


@dataclass
class TransferAborted:
    """A live transfer was discarded before its end marker."""

    kind: FrameKind
    reason: str
    received: int = 0
