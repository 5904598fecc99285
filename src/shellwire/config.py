"""Defaults and settings for the agent and console.

Every default can be overridden by a ``SHELLWIRE_*`` environment variable,
and again by the command-line flags of each entry point.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .protocol.demux import PROGRESS_CHUNK_INTERVAL
from .protocol.framing import FILE_SEGMENT_SIZE, SCREENSHOT_LINE_LENGTH
from .providers import COMMAND_TIMEOUT_S

DEFAULT_PORT = 2006
READ_IDLE_TIMEOUT_S = 30.0
RETRY_INTERVAL_S = 10.0
CONSOLE_QUEUE_SIZE = 10
AGENT_QUEUE_SIZE = 100
AGENT_ENQUEUE_TIMEOUT_S = 5.0
DISPATCH_POLL_S = 0.5

PROMPT = "Please enter command (cmd <command> or ps <command>): "

ENV_PREFIX = "SHELLWIRE_"


def env_str(name: str, default: str) -> str:
    return os.environ.get(ENV_PREFIX + name, default)


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from e


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(ENV_PREFIX + name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from e


@dataclass(frozen=True)
class ConsoleSettings:
    host: str = ""
    port: int = DEFAULT_PORT
    output_dir: Path = Path(".")
    read_timeout_s: float = READ_IDLE_TIMEOUT_S
    queue_size: int = CONSOLE_QUEUE_SIZE
    progress_interval: int = PROGRESS_CHUNK_INTERVAL
    prompt: str = PROMPT


@dataclass(frozen=True)
class AgentSettings:
    server: str
    port: int = DEFAULT_PORT
    retry_interval_s: float = RETRY_INTERVAL_S
    queue_size: int = AGENT_QUEUE_SIZE
    enqueue_timeout_s: float = AGENT_ENQUEUE_TIMEOUT_S
    segment_size: int = FILE_SEGMENT_SIZE
    line_length: int = SCREENSHOT_LINE_LENGTH
    command_timeout_s: float = COMMAND_TIMEOUT_S
