"""Demultiplexer events and their materialization."""

from .events import FileArtifact, ScreenshotArtifact
from .materializer import Materializer, SaveResult
