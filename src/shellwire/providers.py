"""Command execution and screen capture used by the agent."""

from __future__ import annotations

import io
import logging
import os
import subprocess
from dataclasses import dataclass

from PIL import Image

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_S = 300


@dataclass
class CommandResult:
    """Combined output of a command and its failure, if any."""

    output: bytes
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandRunner:
    """Runs ``cmd`` and ``ps`` commands through the platform shells.

    Args:
        timeout: Seconds before a command is killed.
        windows: Force Windows (``cmd /C``) or POSIX (``/bin/sh -c``)
            behaviour; defaults to the running platform.
    """

    def __init__(self, timeout: float = COMMAND_TIMEOUT_S, windows: bool | None = None) -> None:
        self._timeout = timeout
        self._windows = os.name == "nt" if windows is None else windows

    def shell_argv(self, command: str) -> list[str]:
        if self._windows:
            return ["cmd", "/C", command]
        return ["/bin/sh", "-c", command]

    def powershell_argv(self, command: str) -> list[str]:
        if self._windows:
            return ["powershell", "-Command", command]
        return ["pwsh", "-Command", command]

    def run_shell(self, command: str) -> CommandResult:
        logger.info("Executing cmd command: [%s]", command)
        return self._run(self.shell_argv(command))

    def run_powershell(self, command: str) -> CommandResult:
        logger.info("Executing ps command: [%s]", command)
        return self._run(self.powershell_argv(command))

    def _run(self, argv: list[str]) -> CommandResult:
        try:
            completed = subprocess.run(
                argv,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(output=e.output or b"", error=f"timed out after {self._timeout}s")
        except FileNotFoundError as e:
            return CommandResult(output=b"", error=f"{argv[0]} not found: {e}")
        except OSError as e:
            return CommandResult(output=b"", error=str(e))

        if completed.returncode != 0:
            return CommandResult(output=completed.stdout, error=f"exit status {completed.returncode}")
        return CommandResult(output=completed.stdout)


class ScreenCapturer:
    """Grabs the primary display as PNG bytes using ``mss``."""

    def __init__(self, monitor: int = 1) -> None:
        self._monitor = monitor

    def capture_png(self) -> bytes:
        """Capture the screen.

        Raises:
            RuntimeError: If no display is available or the grab fails.
        """
        import mss

        try:
            with mss.mss() as sct:
                if len(sct.monitors) <= self._monitor:
                    raise RuntimeError("no active displays found")
                frame = sct.grab(sct.monitors[self._monitor])
                image = Image.frombytes("RGB", frame.size, frame.rgb)
        except mss.ScreenShotError as e:
            raise RuntimeError(f"failed to capture screen: {e}") from e

        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()
