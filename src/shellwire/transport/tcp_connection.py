"""Line-oriented TCP connection between agent and console.

Wraps a connected socket with newline framing. Reads keep their own
buffer, so a read that hits the deadline can be retried without losing
data already received.
"""

from __future__ import annotations

import logging
import socket

logger = logging.getLogger(__name__)

ENCODING = "utf-8"
RECV_SIZE = 65536


class LineConnection:
    """A persistent, ordered line stream over one socket.

    Usage::

        conn = LineConnection.dial("10.0.0.5", 2006)
        conn.write_line("cmd dir")
        line = conn.read_line()
        conn.close()

    ``read_line`` raises ``TimeoutError`` when the read deadline passes and
    returns ``None`` once the peer has closed the stream. Write failures
    raise ``ConnectionError``.
    """

    def __init__(self, sock: socket.socket, peer: str = "") -> None:
        self._sock = sock
        self._peer = peer or _describe_peer(sock)
        self._buffer = bytearray()
        self._eof = False
        self._closed = False

    @classmethod
    def dial(cls, host: str, port: int, timeout: float | None = 10.0) -> LineConnection:
        """Connect to a listening console.

        Raises:
            ConnectionError: If the connection cannot be established.
        """
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as e:
            raise ConnectionError(f"Failed to connect to {host}:{port}: {e}") from e
        sock.settimeout(None)
        return cls(sock, peer=f"{host}:{port}")

    @property
    def peer(self) -> str:
        return self._peer

    @property
    def closed(self) -> bool:
        return self._closed

    def set_read_timeout(self, seconds: float | None) -> None:
        """Set the read deadline used by :meth:`read_line`."""
        self._sock.settimeout(seconds)

    def write(self, data: bytes) -> None:
        """Send raw bytes.

        Raises:
            ConnectionError: If the socket is closed or the send fails.
        """
        if self._closed:
            raise ConnectionError("Connection is closed")
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise ConnectionError(f"Write to {self._peer} failed: {e}") from e

    def write_line(self, line: str) -> None:
        """Send one line, appending the terminator if missing."""
        if not line.endswith("\n"):
            line += "\n"
        self.write(line.encode(ENCODING))

    def read_line(self) -> str | None:
        """Read the next line, without its terminator.

        Returns:
            The decoded line, or ``None`` at end of stream. A trailing
            partial line is returned before ``None``.

        Raises:
            TimeoutError: If the read deadline passes first.
            ConnectionError: If the socket fails.
        """
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                raw = bytes(self._buffer[:newline])
                del self._buffer[: newline + 1]
                return raw.decode(ENCODING, errors="replace").rstrip("\r")
            if self._eof:
                if self._buffer:
                    raw = bytes(self._buffer)
                    self._buffer.clear()
                    return raw.decode(ENCODING, errors="replace").rstrip("\r")
                return None
            self._fill()

    def _fill(self) -> None:
        try:
            data = self._sock.recv(RECV_SIZE)
        except socket.timeout:
            raise TimeoutError(f"Read from {self._peer} timed out") from None
        except OSError as e:
            if self._closed:
                self._eof = True
                return
            raise ConnectionError(f"Read from {self._peer} failed: {e}") from e
        if not data:
            self._eof = True
            return
        self._buffer.extend(data)

    def close(self) -> None:
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._sock.close()
        except OSError as e:
            logger.warning("Error closing connection to %s: %s", self._peer, e)
        finally:
            logger.info("Disconnected from %s", self._peer)


def _describe_peer(sock: socket.socket) -> str:
    try:
        host, port = sock.getpeername()[:2]
        return f"{host}:{port}"
    except (OSError, ValueError, TypeError):
        return "peer"
