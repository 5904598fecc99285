"""shellwire: line-framed remote command agent and console."""

__version__ = "0.1.0"
