"""JSON-RPC connection on top of a Transport.

Requests are correlated by integer id through a pending table of
``concurrent.futures.Future`` objects, so any number of requests from any
number of threads can be outstanding at once. A single dispatcher thread
drains the transport inbox and resolves futures, routes notifications and
answers server-initiated requests.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any

from tomos.lsp.transport import Message, Transport, TransportClosed
from tomos.types.errors import (
    ConnectionClosedError,
    JsonRpcErrorCode,
    ProtocolError,
    RequestTimeoutError,
)

log = logging.getLogger(__name__)

NotificationHandler = Callable[[str, Any], None]
RequestHandler = Callable[[str, Any], Any]
CloseHandler = Callable[[TransportClosed], None]


class Connection:
    """A live protocol session channel over one transport."""

    def __init__(
        self,
        transport: Transport,
        notification_handler: NotificationHandler | None = None,
        request_handler: RequestHandler | None = None,
        close_handler: CloseHandler | None = None,
    ) -> None:
        self._transport = transport
        self._notification_handler = notification_handler
        self._request_handler = request_handler
        self._close_handler = close_handler
        self._ids = itertools.count(1)
        self._pending: dict[int, Future[Any]] = {}
        self._pending_methods: dict[int, str] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._closing = False
        self._dispatcher: threading.Thread | None = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def start(self) -> None:
        self._transport.start()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop,
            name=f"lsp-dispatch-{self._transport.name}",
            daemon=True,
        )
        self._dispatcher.start()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request and block until its response arrives.

        Raises:
            RequestTimeoutError: No response within ``timeout`` seconds.
            ProtocolError: The server answered with an error object.
            ConnectionClosedError: The transport closed before the answer.
        """
        if self._closed:
            raise ConnectionClosedError(f"Connection closed; cannot send '{method}'")

        future: Future[Any] = Future()
        with self._lock:
            request_id = next(self._ids)
            self._pending[request_id] = future
            self._pending_methods[request_id] = method

        message: Message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params
        try:
            self._transport.send(message)
        except Exception:
            self._forget(request_id)
            raise

        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            self._forget(request_id)
            log.warning("Request %s (id %d) timed out after %ss", method, request_id, timeout)
            raise RequestTimeoutError(method, timeout or 0.0) from None

    def send_notification(self, method: str, params: Any = None) -> None:
        if self._closed:
            raise ConnectionClosedError(f"Connection closed; cannot send '{method}'")
        message: Message = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        self._transport.send(message)

    def close(self) -> None:
        """Close deliberately; the close handler is not invoked."""
        self._closing = True
        self._transport.close()
        if self._dispatcher is not None and self._dispatcher is not threading.current_thread():
            self._dispatcher.join(timeout=5.0)
        self._fail_pending(ConnectionClosedError("Connection closed by client"))
        self._closed = True

    def _forget(self, request_id: int) -> None:
        with self._lock:
            self._pending.pop(request_id, None)
            self._pending_methods.pop(request_id, None)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _dispatch_loop(self) -> None:
        while True:
            item = self._transport.inbox.get()
            if isinstance(item, TransportClosed):
                self._handle_close(item)
                return
            try:
                self._dispatch(item)
            except Exception:
                log.exception("Error dispatching message from %s language server", self._transport.name)

    def _dispatch(self, message: Message) -> None:
        method = message.get("method")
        if method is not None and "id" in message:
            self._handle_server_request(message["id"], method, message.get("params"))
        elif method is not None:
            if self._notification_handler is not None:
                self._notification_handler(method, message.get("params"))
        elif "id" in message:
            self._handle_response(message)
        else:
            log.debug("Ignoring malformed message: %s", message)

    def _handle_response(self, message: Message) -> None:
        request_id = message["id"]
        with self._lock:
            future = self._pending.pop(request_id, None)
            method = self._pending_methods.pop(request_id, None)
        if future is None:
            log.debug("Response for unknown or expired request id %s", request_id)
            return

        error = message.get("error")
        if error is not None:
            future.set_exception(
                ProtocolError(
                    f"'{method}' failed: {error.get('message', 'LSP error')}",
                    rpc_code=error.get("code"),
                    data=error.get("data"),
                )
            )
        else:
            future.set_result(message.get("result"))

    def _handle_server_request(self, request_id: Any, method: str, params: Any) -> None:
        reply: Message = {"jsonrpc": "2.0", "id": request_id}
        try:
            reply["result"] = self._request_handler(method, params) if self._request_handler else None
        except Exception as e:
            log.warning("Failed to answer server request %s: %s", method, e)
            reply["error"] = {"code": int(JsonRpcErrorCode.INTERNAL_ERROR), "message": str(e)}
        try:
            self._transport.send(reply)
        except ConnectionClosedError:
            log.debug("Could not answer %s: connection closed", method)

    def _handle_close(self, event: TransportClosed) -> None:
        self._closed = True
        self._fail_pending(ConnectionClosedError(f"Connection closed: {event.reason}"))
        if self._closing:
            return
        if self._close_handler is not None:
            try:
                self._close_handler(event)
            except Exception:
                log.exception("Close handler failed for %s language server", self._transport.name)

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
            self._pending_methods.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
