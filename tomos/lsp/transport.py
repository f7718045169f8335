"""Message transports for the LSP connection.

A transport moves JSON-RPC messages between the client and one language
server. Outbound messages go through ``send()``; inbound messages are put
on the ``inbox`` queue, in arrival order, followed by exactly one
``TransportClosed`` event when the channel goes away. The connection drains
that queue on its own thread, so nothing here calls back into client code.

Two implementations:
- ``StdioTransport``: ``Content-Length`` framed messages over a child
  process's stdin/stdout.
- ``InMemoryTransport``: hands each outbound message to a Python callable
  and queues whatever it answers; used to drive the session without
  spawning anything.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import IO, Any, Union

from tomos.lsp.process import LanguageServerProcess
from tomos.types.errors import ConnectionClosedError

log = logging.getLogger(__name__)

Message = dict[str, Any]


@dataclass(frozen=True)
class TransportClosed:
    """Terminal inbox event: the channel is gone."""

    reason: str
    exit_code: int | None = None
    error: str | None = None

    @property
    def is_crash(self) -> bool:
        """True when the server went away with an error or a non-zero exit code."""
        return self.error is not None or (self.exit_code is not None and self.exit_code != 0)


InboxItem = Union[Message, TransportClosed]


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def encode_message(payload: Message) -> bytes:
    """Serialize one message with its ``Content-Length`` header."""
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    header = f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
    return header + body


def read_message(stream: IO[bytes]) -> Message | None:
    """Read one framed message from a blocking stream.

    Returns:
        The decoded message, or None at end of stream.

    Raises:
        ValueError: On a malformed header or a truncated body.
    """
    content_length: int | None = None
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.rstrip(b"\r\n")
        if not line:
            if content_length is None:
                # stray blank line between frames
                continue
            break
        key, _, value = line.decode("ascii", errors="replace").partition(":")
        if key.strip().lower() == "content-length":
            try:
                content_length = int(value.strip())
            except ValueError as e:
                raise ValueError(f"Invalid Content-Length header: {line!r}") from e
            if content_length < 0:
                raise ValueError(f"Invalid Content-Length header: {line!r}")

    body = stream.read(content_length)
    if len(body) < content_length:
        raise ValueError(f"Truncated message body: expected {content_length} bytes, got {len(body)}")
    return json.loads(body.decode("utf-8"))


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class Transport(ABC):
    """Duplex message channel to one language server."""

    def __init__(self, name: str = "lsp", trace: bool = False) -> None:
        self.name = name
        self.inbox: queue.Queue[InboxItem] = queue.Queue()
        self._trace = trace
        self._closed = False
        self._closed_lock = threading.Lock()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Begin receiving. A no-op for transports with nothing to run."""

    @abstractmethod
    def send(self, message: Message) -> None:
        """Send one message.

        Raises:
            ConnectionClosedError: If the channel is already closed.
        """

    @abstractmethod
    def close(self) -> None:
        """Close the channel and release its resources."""

    def _deliver(self, message: Message) -> None:
        if self._trace:
            log.debug("LSP: %s -> client: %s", self.name, message)
        self.inbox.put(message)

    def _signal_closed(self, reason: str, exit_code: int | None = None, error: str | None = None) -> bool:
        """Queue the terminal event once. Returns False if already closed."""
        with self._closed_lock:
            if self._closed:
                return False
            self._closed = True
        self.inbox.put(TransportClosed(reason=reason, exit_code=exit_code, error=error))
        return True

    def _trace_out(self, message: Message) -> None:
        if self._trace:
            log.debug("LSP: client -> %s: %s", self.name, message)


class StdioTransport(Transport):
    """Framed JSON-RPC over a language server process's stdio."""

    def __init__(self, process: LanguageServerProcess, trace: bool = False, shutdown_timeout: float = 5.0) -> None:
        super().__init__(name=process.language, trace=trace)
        self.process = process
        self._shutdown_timeout = shutdown_timeout
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None

    def start(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"lsp-reader-{self.name}",
            daemon=True,
        )
        self._reader.start()

    def _read_loop(self) -> None:
        error: str | None = None
        stream = self.process.stdout
        while True:
            try:
                message = read_message(stream)
            except json.JSONDecodeError as e:
                log.warning("Dropping undecodable message from %s language server: %s", self.name, e)
                continue
            except (OSError, ValueError) as e:
                if not self._closed:
                    log.error("Read error on %s language server stdout: %s", self.name, e)
                    error = str(e)
                break
            if message is None:
                break
            self._deliver(message)

        exit_code = self.process.wait(timeout=self._shutdown_timeout)
        if self._signal_closed("language server exited", exit_code=exit_code, error=error):
            log.warning("%s language server exited (code %s)", self.name, exit_code)

    def send(self, message: Message) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Transport to {self.name} language server is closed")
        self._trace_out(message)
        data = encode_message(message)
        try:
            with self._write_lock:
                self.process.stdin.write(data)
                self.process.stdin.flush()
        except (OSError, ValueError) as e:
            raise ConnectionClosedError(
                f"Failed to write to {self.name} language server: {e}",
                original_error=e,
            ) from e

    def close(self) -> None:
        self._signal_closed("closed by client")
        self.process.stop(timeout=self._shutdown_timeout)


class InMemoryTransport(Transport):
    """Transport that hands messages to an in-process handler.

    ``handler`` receives every outbound message and returns the messages the
    "server" sends back (responses, notifications or server requests), which
    are queued in order. ``push()`` injects unsolicited server messages and
    ``simulate_exit()`` behaves like the server process dying.
    """

    def __init__(
        self,
        handler: Callable[[Message], Iterable[Message] | None] | None = None,
        name: str = "memory",
        trace: bool = False,
    ) -> None:
        super().__init__(name=name, trace=trace)
        self._handler = handler
        self.sent: list[Message] = []

    def send(self, message: Message) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Transport to {self.name} is closed")
        self._trace_out(message)
        self.sent.append(message)
        if self._handler is None:
            return
        for reply in self._handler(message) or ():
            self._deliver(reply)

    def push(self, message: Message) -> None:
        self._deliver(message)

    def simulate_exit(self, exit_code: int = 1, error: str | None = None) -> None:
        self._signal_closed("language server exited", exit_code=exit_code, error=error)

    def close(self) -> None:
        self._signal_closed("closed by client")
