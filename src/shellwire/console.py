"""Console: accepts an agent, dispatches operator commands, renders results.

Per connection three flows run side by side:

- the operator input thread queues commands (lossy when the queue is full),
- the response reader thread feeds the demultiplexer and materializer,
- the dispatch loop writes queued commands to the agent.

The dispatch loop only writes while the demultiplexer is idle, so a
command typed during a file or screenshot transfer goes out after that
frame has completed.
"""

from __future__ import annotations

import argparse
import logging
import queue
import socket
import sys
import threading
from collections.abc import Callable
from pathlib import Path

from .config import (
    CONSOLE_QUEUE_SIZE,
    DEFAULT_PORT,
    DISPATCH_POLL_S,
    READ_IDLE_TIMEOUT_S,
    ConsoleSettings,
    env_float,
    env_int,
    env_str,
)
from .models.materializer import ConsoleSurface, Materializer
from .protocol.demux import PROGRESS_CHUNK_INTERVAL, StreamDemultiplexer
from .transport.cancel import CancelToken
from .transport.tcp_connection import LineConnection

logger = logging.getLogger(__name__)

HELP_TEXT = """Help:
Input "cmd dir d:\\test" to execute a CMD command
Input "cmd capture screen" to take current picture and send back, which will be saved to the output folder as image
Input "ps <command>" to execute a PowerShell command
Input "send <path>" to fetch a file from the agent into the output folder
Input "help" to show this help message"""


class OperatorInput:
    """Reads operator commands on a background thread into a bounded queue.

    Args:
        read_command: Returns the next command; raises ``EOFError`` when
            the operator is done.
        surface: Where local help is printed.
        queue_size: Commands held before new ones are dropped.
    """

    def __init__(
        self,
        read_command: Callable[[], str],
        surface: ConsoleSurface | None = None,
        queue_size: int = CONSOLE_QUEUE_SIZE,
    ) -> None:
        self._read_command = read_command
        self._surface = surface or ConsoleSurface()
        self.commands: queue.Queue[str] = queue.Queue(maxsize=queue_size)
        self.closed = CancelToken()
        self.dropped = 0
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        if self._thread is None:
            self._thread = threading.Thread(target=self._loop, name="operator-input", daemon=True)
            self._thread.start()
        return self._thread

    def _loop(self) -> None:
        while not self.closed.cancelled:
            try:
                line = self._read_command()
            except EOFError:
                self.closed.cancel("operator input closed")
                return
            self.submit(line)

    def submit(self, line: str) -> bool:
        """Queue one command without blocking. Returns False if it was dropped."""
        command = line.strip()
        if not command:
            return False
        if command == "help":
            self._surface.write_line(HELP_TEXT)
            return False
        try:
            self.commands.put_nowait(command)
        except queue.Full:
            self.dropped += 1
            logger.warning("Command queue is full, dropping command: %s", command)
            return False
        return True


class ConsoleSession:
    """One agent connection: response reader plus command dispatcher.

    Args:
        conn: Connected agent stream.
        operator: Source of queued operator commands.
        materializer: Renders and saves completed frames.
        read_timeout_s: Read deadline; a transfer idle this long is dropped.
        progress_interval: Chunks between periodic progress reports.
    """

    def __init__(
        self,
        conn: LineConnection,
        operator: OperatorInput,
        materializer: Materializer,
        read_timeout_s: float = READ_IDLE_TIMEOUT_S,
        progress_interval: int = PROGRESS_CHUNK_INTERVAL,
    ) -> None:
        self._conn = conn
        self._operator = operator
        self._materializer = materializer
        self._read_timeout_s = read_timeout_s
        self.demux = StreamDemultiplexer(progress_interval)
        self.token = CancelToken()
        self._idle = threading.Event()
        self._idle.set()
        self._reader: threading.Thread | None = None

    @property
    def idle(self) -> threading.Event:
        return self._idle

    def start_reader(self) -> threading.Thread:
        if self._reader is None:
            self._reader = threading.Thread(target=self._read_responses, name="response-reader", daemon=True)
            self._reader.start()
        return self._reader

    def run(self) -> None:
        """Dispatch commands until the agent disconnects or the operator quits."""
        self.start_reader()
        try:
            self._dispatch()
        finally:
            self.token.cancel("session ended")
            self._conn.close()
            if self._reader is not None:
                self._reader.join(timeout=2.0)
        logger.info("Client handler shutting down (%s)", self.token.reason)

    def _dispatch(self) -> None:
        commands = self._operator.commands
        while not self.token.cancelled:
            if self._operator.closed.cancelled and commands.empty():
                self.token.cancel("operator input closed")
                return
            try:
                command = commands.get(timeout=DISPATCH_POLL_S)
            except queue.Empty:
                continue

            while not self._idle.wait(DISPATCH_POLL_S):
                if self.token.cancelled:
                    return

            try:
                self._conn.write_line(command)
            except ConnectionError as e:
                logger.error("Failed to send command: %s", e)
                self.token.cancel("write failed")
                return
            logger.info("Command sent: %s", command)

    def _read_responses(self) -> None:
        self._conn.set_read_timeout(self._read_timeout_s)
        while not self.token.cancelled:
            try:
                line = self._conn.read_line()
            except TimeoutError:
                if not self.demux.idle:
                    self._apply(self.demux.abort(f"no data for {self._read_timeout_s:.0f}s"))
                continue
            except ConnectionError as e:
                if not self.token.cancelled:
                    logger.error("Failed to read client response: %s", e)
                self._apply(self.demux.abort("connection lost"))
                self.token.cancel("read failed")
                return

            if line is None:
                self._apply(self.demux.abort("connection closed"))
                self.token.cancel("agent disconnected")
                return

            self._apply(self.demux.feed(line))

    def _apply(self, events: list) -> None:
        for event in events:
            self._materializer.handle(event)
        if self.demux.idle:
            self._idle.set()
        else:
            self._idle.clear()


def prompt_reader(prompt: str) -> Callable[[], str]:
    def read() -> str:
        return input(prompt)

    return read


def serve(
    settings: ConsoleSettings,
    operator: OperatorInput,
    materializer: Materializer,
    stop: CancelToken | None = None,
) -> None:
    """Accept agents one at a time and run a session for each."""
    server_sock = socket.create_server((settings.host, settings.port))
    server_sock.settimeout(1.0)
    logger.info("Server started, listening on port %d", settings.port)
    try:
        while not operator.closed.cancelled and not (stop and stop.cancelled):
            try:
                sock, addr = server_sock.accept()
            except socket.timeout:
                continue
            sock.settimeout(None)
            conn = LineConnection(sock)
            logger.info("New connection from: %s", conn.peer)
            ConsoleSession(
                conn,
                operator,
                materializer,
                read_timeout_s=settings.read_timeout_s,
                progress_interval=settings.progress_interval,
            ).run()
    finally:
        server_sock.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellwire-console",
        description="Listen for a shellwire agent and send it commands.",
    )
    parser.add_argument("--host", default=env_str("HOST", ""),
                        help="Address to bind (default: all interfaces)")
    parser.add_argument("--port", "-p", type=int, default=env_int("PORT", DEFAULT_PORT),
                        help=f"Port to listen on (default: {DEFAULT_PORT})")
    parser.add_argument("--output-dir", "-o", type=Path,
                        default=Path(env_str("OUTPUT_DIR", ".")),
                        help="Where received files and screenshots are saved")
    parser.add_argument("--read-timeout", type=float,
                        default=env_float("READ_TIMEOUT", READ_IDLE_TIMEOUT_S),
                        help="Seconds without data before a stalled transfer is dropped")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = ConsoleSettings(
        host=args.host,
        port=args.port,
        output_dir=args.output_dir,
        read_timeout_s=args.read_timeout,
    )
    surface = ConsoleSurface()
    operator = OperatorInput(prompt_reader(settings.prompt), surface, settings.queue_size)
    materializer = Materializer(settings.output_dir, surface, prompt=settings.prompt)

    logger.info("Starting server")
    operator.start()
    try:
        serve(settings, operator, materializer)
    except OSError as e:
        logger.error("Failed to start server: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Console interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
