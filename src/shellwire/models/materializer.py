"""Turns completed frames into console output and files on disk.

Text lines go to the console surface. Files are always saved, even when
their size disagrees with the declared size. Screenshots are only saved
once Pillow accepts them as PNG.
"""

from __future__ import annotations

import io
import logging
import sys
import tarfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import TextIO

from PIL import Image, UnidentifiedImageError

from ..protocol.codec import DecodeError, decode_payload
from .events import (
    ChunkRejected,
    FileArtifact,
    FileReceived,
    ResponseComplete,
    ScreenshotArtifact,
    ScreenshotReceived,
    TextLine,
    TransferAborted,
    TransferProgress,
    TransferStarted,
)

logger = logging.getLogger(__name__)

DEFAULT_FILE_NAME = "received.bin"
SCREENSHOT_FORMAT = "PNG"
TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")
ZIP_SUFFIXES = (".zip",)


@dataclass
class SaveResult:
    """Outcome of materializing a file or screenshot."""

    path: Path | None
    size: int
    warnings: list[str] = field(default_factory=list)
    error: str = ""

    @property
    def saved(self) -> bool:
        return self.path is not None


class ConsoleSurface:
    """Where the console renders results. Writes to a text stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout

    def write_line(self, text: str) -> None:
        print(text, file=self._stream, flush=True)

    def notice(self, text: str) -> None:
        print(f"\n--- {text} ---", file=self._stream, flush=True)

    def progress(self, update: TransferProgress) -> None:
        if update.percent is not None:
            print(
                f"Receiving {update.name}: {update.percent}% "
                f"({update.received}/{update.expected} bytes, chunk {update.chunks})",
                file=self._stream,
                flush=True,
            )
        else:
            print(
                f"Receiving {update.name}: {update.received} bytes, chunk {update.chunks}",
                file=self._stream,
                flush=True,
            )


def safe_file_name(name: str) -> str:
    """Reduce a name received from the wire to a bare file name."""
    base = PureWindowsPath(PurePosixPath(name.strip()).name).name
    if base in ("", ".", ".."):
        return DEFAULT_FILE_NAME
    return base


def split_extension(name: str) -> tuple[str, str]:
    """Split a file name into stem and extension.

    Multi-part archive extensions such as ``.tar.gz`` count as one.
    """
    lowered = name.lower()
    for suffix in TAR_SUFFIXES:
        if suffix.count(".") > 1 and lowered.endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)], name[-len(suffix):]
    path = Path(name)
    return path.stem, path.suffix


def unique_path(directory: Path, name: str) -> Path:
    """Return ``directory/name``, or ``stem_N.ext`` if that already exists."""
    candidate = directory / name
    if not candidate.exists():
        return candidate
    stem, suffix = split_extension(name)
    counter = 1
    while True:
        candidate = directory / f"{stem}_{counter}{suffix}"
        if not candidate.exists():
            return candidate
        counter += 1


def inspect_archive(path: Path) -> tuple[int | None, str]:
    """Open a saved archive to count its members.

    Returns:
        ``(member_count, "")`` for a readable archive, ``(None, warning)``
        for a corrupt one, and ``(None, "")`` if the name is not an archive.
    """
    name = path.name.lower()
    try:
        if name.endswith(ZIP_SUFFIXES):
            with zipfile.ZipFile(path) as archive:
                bad = archive.testzip()
                if bad is not None:
                    return None, f"Archive {path.name} has a corrupt member: {bad}"
                return len(archive.namelist()), ""
        if name.endswith(TAR_SUFFIXES):
            with tarfile.open(path) as archive:
                return len(archive.getmembers()), ""
    except (zipfile.BadZipFile, tarfile.TarError, EOFError, OSError) as e:
        return None, f"Archive {path.name} may be corrupt: {e}"
    return None, ""


def screenshot_name(now: datetime | None = None) -> str:
    now = now or datetime.now()
    return f"screenshot_{now.strftime('%Y%m%d_%H%M%S')}.png"


class Materializer:
    """Applies demultiplexer events to the console and the filesystem.

    Args:
        output_dir: Directory received files and screenshots are saved in.
        surface: Console rendering surface.
        prompt: Printed after each completed response, if set.
    """

    def __init__(
        self,
        output_dir: str | Path = ".",
        surface: ConsoleSurface | None = None,
        prompt: str = "",
    ) -> None:
        self._output_dir = Path(output_dir)
        self._surface = surface or ConsoleSurface()
        self._prompt = prompt

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def handle(self, event) -> SaveResult | None:
        """Dispatch one event. Returns a SaveResult for file/screenshot events."""
        if isinstance(event, TextLine):
            self._surface.write_line(event.text)
        elif isinstance(event, ResponseComplete):
            self._surface.notice("Command execution completed")
            if self._prompt:
                self._surface.write_line(self._prompt)
        elif isinstance(event, TransferStarted):
            label = event.name or event.kind.value
            self._surface.notice(f"Receiving {label} ({event.size} bytes)")
        elif isinstance(event, TransferProgress):
            self._surface.progress(event)
        elif isinstance(event, ChunkRejected):
            pass  # counted by the demultiplexer, summarized on completion
        elif isinstance(event, TransferAborted):
            self._surface.notice(f"Transfer aborted: {event.reason}")
        elif isinstance(event, FileReceived):
            return self.save_file(event.artifact)
        elif isinstance(event, ScreenshotReceived):
            return self.save_screenshot(event.artifact)
        else:
            logger.warning("Unhandled event: %r", event)
        return None

    def save_file(self, artifact: FileArtifact) -> SaveResult:
        """Write a received file, reporting (not rejecting) size mismatches."""
        warnings: list[str] = []
        actual = len(artifact.data)
        if artifact.size_mismatch:
            warnings.append(
                f"Size mismatch for {artifact.name}: expected {artifact.declared_size} "
                f"bytes, received {actual}"
            )
        if artifact.decode_errors:
            warnings.append(
                f"{artifact.decode_errors} chunk(s) of {artifact.name} could not be decoded"
            )

        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            path = unique_path(self._output_dir, safe_file_name(artifact.name))
            path.write_bytes(artifact.data)
        except OSError as e:
            logger.error("Failed to save %s: %s", artifact.name, e)
            self._surface.notice(f"Failed to save {artifact.name}: {e}")
            return SaveResult(path=None, size=actual, warnings=warnings, error=str(e))

        count, archive_warning = inspect_archive(path)
        if archive_warning:
            warnings.append(archive_warning)

        for warning in warnings:
            logger.warning(warning)
            self._surface.write_line(f"Warning: {warning}")

        summary = f"File saved as {path.name} ({actual} bytes"
        if artifact.elapsed > 0:
            summary += f", {artifact.elapsed:.1f}s"
        if count is not None:
            summary += f", {count} archive entries"
        self._surface.notice(summary + ")")
        return SaveResult(path=path, size=actual, warnings=warnings)

    def save_screenshot(self, artifact: ScreenshotArtifact, now: datetime | None = None) -> SaveResult:
        """Decode, validate and write a screenshot. Invalid images are not saved."""
        try:
            data = decode_payload(artifact.encoded)
        except DecodeError as e:
            return self._screenshot_failed(f"Failed to decode screenshot data: {e}", 0)

        warnings: list[str] = []
        if len(data) != artifact.declared_size:
            warnings.append(
                f"Screenshot size mismatch: expected {artifact.declared_size} bytes, "
                f"got {len(data)}"
            )

        try:
            with Image.open(io.BytesIO(data)) as image:
                image_format = image.format
                image.verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            return self._screenshot_failed(f"Failed to decode PNG data: {e}", len(data))
        if image_format != SCREENSHOT_FORMAT:
            return self._screenshot_failed(
                f"Screenshot is {image_format}, expected {SCREENSHOT_FORMAT}", len(data)
            )

        for warning in warnings:
            logger.warning(warning)
            self._surface.write_line(f"Warning: {warning}")

        path = self._output_dir / screenshot_name(now)
        try:
            self._output_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            return self._screenshot_failed(f"Failed to write screenshot: {e}", len(data))

        self._surface.notice(f"Screenshot saved as {path.name}")
        return SaveResult(path=path, size=len(data), warnings=warnings)

    def _screenshot_failed(self, message: str, size: int) -> SaveResult:
        logger.error(message)
        self._surface.notice(message)
        return SaveResult(path=None, size=size, error=message)
