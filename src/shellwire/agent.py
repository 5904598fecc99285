"""Agent: dials the console, runs commands and streams framed results back.

Commands arrive one per line. A reader thread queues them and the session
loop handles them strictly one at a time, so response frames never
interleave on the connection.
"""

from __future__ import annotations

import argparse
import logging
import queue
import sys
import threading

from .config import (
    DEFAULT_PORT,
    DISPATCH_POLL_S,
    READ_IDLE_TIMEOUT_S,
    RETRY_INTERVAL_S,
    AgentSettings,
    env_float,
    env_int,
    env_str,
)
from .protocol.framing import FrameWriter
from .providers import CommandRunner, ScreenCapturer
from .transport.cancel import CancelToken
from .transport.tcp_connection import LineConnection

logger = logging.getLogger(__name__)

HELP_TEXT = """Available commands:
  cmd <command>        - Execute a shell command (e.g., "cmd dir d:\\test")
  cmd capture screen   - Take current screenshot and send back
  ps <command>         - Execute a PowerShell command
  send <path>          - Send a file back to the console
  help                 - Show this help message
  exit                 - Disconnect this agent

Examples:
  cmd dir d:\\test
  cmd capture screen
  send C:\\logs\\report.txt
"""

UNKNOWN_COMMAND_TEXT = (
    "Unknown command format. Please use 'cmd <command>' or 'ps <command>'\n"
    "Type 'help' for more information.\n"
)

CAPTURE_COMMAND = "cmd capture screen"


class AgentSession:
    """Serves one console connection until it closes or ``exit`` arrives.

    Args:
        conn: Connected line stream to the console.
        settings: Agent settings.
        runner: Executes ``cmd``/``ps`` commands.
        capturer: Grabs the screen for ``cmd capture screen``.
    """

    def __init__(
        self,
        conn: LineConnection,
        settings: AgentSettings,
        runner: CommandRunner | None = None,
        capturer: ScreenCapturer | None = None,
    ) -> None:
        self._conn = conn
        self._settings = settings
        self._runner = runner or CommandRunner(timeout=settings.command_timeout_s)
        self._capturer = capturer or ScreenCapturer()
        self._writer = FrameWriter(
            conn,
            segment_size=settings.segment_size,
            line_length=settings.line_length,
        )
        self._commands: queue.Queue[str] = queue.Queue(maxsize=settings.queue_size)
        self._token = CancelToken()
        self._read_error: Exception | None = None

    @property
    def token(self) -> CancelToken:
        return self._token

    def run(self) -> None:
        """Process commands until the session ends.

        Raises:
            ConnectionError: If reading or writing the connection failed.
        """
        reader = threading.Thread(target=self._read_commands, name="agent-reader", daemon=True)
        reader.start()
        try:
            while True:
                try:
                    command = self._commands.get(timeout=DISPATCH_POLL_S)
                except queue.Empty:
                    if self._token.cancelled:
                        break
                    continue
                if not self.handle_command(command):
                    break
        except ConnectionError as e:
            self._token.cancel(f"write failed: {e}")
            raise
        finally:
            self._token.cancel("session ended")
            self._conn.close()
            reader.join(timeout=1.0)

        if self._read_error is not None:
            raise ConnectionError(str(self._read_error)) from self._read_error

    def _read_commands(self) -> None:
        self._conn.set_read_timeout(READ_IDLE_TIMEOUT_S)
        while not self._token.cancelled:
            try:
                line = self._conn.read_line()
            except TimeoutError:
                continue
            except ConnectionError as e:
                if not self._token.cancelled:
                    logger.error("Failed to read server command: %s", e)
                    self._read_error = e
                self._token.cancel("read failed")
                return
            if line is None:
                logger.info("Server closed the connection")
                self._token.cancel("server closed")
                return

            message = line.strip()
            if not message:
                continue
            logger.info("Received server command: [%s]", message)
            try:
                self._commands.put(message, timeout=self._settings.enqueue_timeout_s)
            except queue.Full:
                logger.warning("Command queue is full, dropping command: %s", message)

    def handle_command(self, message: str) -> bool:
        """Run one command and write its response frame.

        Returns:
            False if the session should end.
        """
        if message == "help":
            self._writer.write_text(HELP_TEXT)
            return True

        if message == "exit":
            logger.info("Received exit command from server, disconnecting...")
            self._writer.write_text("Client is disconnecting...\n")
            return False

        if message.startswith("send "):
            path = message[len("send "):].strip()
            logger.info("Sending file: %s", path)
            self._writer.write_file(path)
            return True

        if message == CAPTURE_COMMAND:
            logger.info("Capturing screen...")
            self._send_screenshot()
            return True

        if message.startswith("cmd "):
            result = self._runner.run_shell(message[len("cmd "):])
        elif message.startswith("ps "):
            result = self._runner.run_powershell(message[len("ps "):])
        else:
            self._writer.write_text(UNKNOWN_COMMAND_TEXT)
            return True

        self._writer.write_text(result.output, error=result.error)
        return True

    def _send_screenshot(self) -> None:
        try:
            image = self._capturer.capture_png()
        except (RuntimeError, OSError) as e:
            logger.error("Screen capture failed: %s", e)
            self._writer.write_text(f"Failed to capture screen: {e}\n")
            return
        self._writer.write_screenshot(image)


def run_agent(settings: AgentSettings, stop: CancelToken | None = None) -> None:
    """Connect, serve, and reconnect after ``retry_interval_s`` until stopped."""
    stop = stop or CancelToken()
    while not stop.cancelled:
        try:
            conn = LineConnection.dial(settings.server, settings.port)
            logger.info("Connected to server: %s", conn.peer)
            AgentSession(conn, settings).run()
            logger.info("Server connection closed normally")
        except ConnectionError as e:
            logger.error("Connection to server disconnected or failed: %s", e)
        logger.info("Will retry connection in %.0f seconds...", settings.retry_interval_s)
        stop.wait(settings.retry_interval_s)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shellwire-agent",
        description="Connect to a shellwire console and execute its commands.",
    )
    parser.add_argument("--server", "-s", default=env_str("SERVER", ""),
                        help="Console host address (env: SHELLWIRE_SERVER)")
    parser.add_argument("--port", "-p", type=int, default=env_int("PORT", DEFAULT_PORT),
                        help=f"Console port (default: {DEFAULT_PORT})")
    parser.add_argument("--retry-interval", type=float,
                        default=env_float("RETRY_INTERVAL", RETRY_INTERVAL_S),
                        help="Seconds between reconnect attempts")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.server:
        parser.print_usage(sys.stderr)
        print("Error: server address is required (--server or SHELLWIRE_SERVER)", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = AgentSettings(
        server=args.server,
        port=args.port,
        retry_interval_s=args.retry_interval,
    )
    logger.info("shellwire agent is starting...")
    try:
        run_agent(settings)
    except KeyboardInterrupt:
        logger.info("Agent interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
