"""Protocol session with one language server.

``LanguageServerClient`` owns the connection to one server process for one
workspace root: the initialize handshake, document synchronization, the
query requests used by the edit engine, the lifecycle state machine and the
restart/replay sequence. Supervision (when to restart) lives in
``tomos.lsp.health``; this class only knows how.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from tomos.constants import utcnow
from tomos.lsp.binary import resolve_binary
from tomos.lsp.clock import Clock, ScheduledCall, SystemClock
from tomos.lsp.connection import Connection
from tomos.lsp.documents import DocumentTracker, OpenDocument, apply_text_edits, bottom_up
from tomos.lsp.ls_config import LanguageServerConfig
from tomos.lsp.process import LanguageServerProcess
from tomos.lsp.settings import ClientSettings
from tomos.lsp.transport import StdioTransport, Transport, TransportClosed
from tomos.lsp.utils import path_to_uri
from tomos.types.core import (
    CompletionItem,
    ContentChange,
    Diagnostic,
    HealthState,
    Location,
    Position,
    ServerState,
    WorkspaceEdit,
)
from tomos.types.errors import (
    ApplyEditRejectedError,
    ConnectionClosedError,
    ErrorContext,
    HandshakeError,
    HandshakeTimeoutError,
    NotInitializedError,
    ProtocolError,
    RequestTimeoutError,
    RestartInProgressError,
    TomosError,
)

log = logging.getLogger(__name__)

TransportFactory = Callable[[LanguageServerConfig, str, ClientSettings], Transport]


def spawn_stdio_transport(config: LanguageServerConfig, root: str, settings: ClientSettings) -> Transport:
    """Resolve the configured binary, spawn it and wrap its stdio."""
    binary = resolve_binary(config.command, language=config.language)
    process = LanguageServerProcess(binary, config.args, cwd=root, language=config.language)
    process.start()
    return StdioTransport(
        process,
        trace=settings.trace_lsp_communication,
        shutdown_timeout=settings.shutdown_timeout,
    )


def client_capabilities() -> dict[str, Any]:
    """Capabilities advertised in the initialize request."""
    return {
        "textDocument": {
            "synchronization": {
                "dynamicRegistration": False,
                "didSave": True,
                "willSave": False,
                "willSaveWaitUntil": False,
            },
            "completion": {
                "dynamicRegistration": False,
                "completionItem": {"snippetSupport": False, "documentationFormat": ["markdown", "plaintext"]},
            },
            "hover": {"dynamicRegistration": False, "contentFormat": ["markdown", "plaintext"]},
            "documentSymbol": {
                "dynamicRegistration": False,
                "hierarchicalDocumentSymbolSupport": True,
                "symbolKind": {"valueSet": list(range(1, 27))},
            },
            "definition": {"dynamicRegistration": False, "linkSupport": True},
            "references": {"dynamicRegistration": False},
            "rename": {"dynamicRegistration": False, "prepareSupport": False},
            "publishDiagnostics": {"relatedInformation": True},
        },
        "workspace": {
            "applyEdit": True,
            "workspaceEdit": {"documentChanges": True},
            "configuration": True,
            "workspaceFolders": True,
        },
        "window": {"workDoneProgress": False},
    }


def hover_text(result: Any) -> str | None:
    """Flatten the many shapes of a hover ``contents`` field into text."""
    if not result:
        return None
    contents = result.get("contents") if isinstance(result, dict) else result
    if contents is None:
        return None
    if isinstance(contents, str):
        return contents or None
    if isinstance(contents, dict):
        return contents.get("value") or None
    if isinstance(contents, list):
        parts = [hover_text({"contents": c}) for c in contents]
        text = "\n\n".join(p for p in parts if p)
        return text or None
    return None


class LanguageServerClient:
    """Session with one language server for one workspace root.

    Args:
        config: How to launch the server.
        root: Workspace root directory.
        settings: Timeouts and supervision intervals.
        clock: Time source for heartbeats and restart backoff.
        transport_factory: Builds a fresh transport for each (re)start;
            defaults to spawning the configured binary over stdio.
    """

    def __init__(
        self,
        config: LanguageServerConfig,
        root: str,
        settings: ClientSettings | None = None,
        clock: Clock | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config
        self.language = config.language
        self.root = os.path.abspath(root)
        self.settings = settings or ClientSettings()
        self.clock = clock or SystemClock()
        self._transport_factory = transport_factory or spawn_stdio_transport

        self.documents = DocumentTracker()
        self.server_capabilities: dict[str, Any] = {}
        self._diagnostics: dict[str, list[Diagnostic]] = {}
        self._connection: Connection | None = None

        self._lock = threading.RLock()
        self._state = ServerState.UNINITIALIZED
        self._healthy = True
        self._restart_in_progress = False
        self._restart_needed = False
        self._restart_count = 0
        self._last_exit_code: int | None = None
        self._last_activity = self.clock.now()
        self._last_activity_at: datetime = utcnow()
        self._backoff_call: ScheduledCall | None = None
        self._exit_listeners: list[Callable[[LanguageServerClient], None]] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def restart_in_progress(self) -> bool:
        return self._restart_in_progress

    @property
    def restart_needed(self) -> bool:
        """True after an exit/error event until a restart succeeds."""
        return self._restart_needed

    @property
    def last_activity(self) -> float:
        return self._last_activity

    def get_health(self) -> HealthState:
        with self._lock:
            return HealthState(
                healthy=self._healthy,
                state=self._state,
                last_activity=self._last_activity,
                last_activity_at=self._last_activity_at,
                restart_in_progress=self._restart_in_progress,
                restart_count=self._restart_count,
                last_exit_code=self._last_exit_code,
            )

    def add_exit_listener(self, listener: Callable[[LanguageServerClient], None]) -> None:
        """Register a callback run (on the dispatcher thread) when the server dies."""
        self._exit_listeners.append(listener)

    def _set_state(self, state: ServerState) -> None:
        with self._lock:
            if self._state is state:
                return
            log.debug("%s language server: %s -> %s", self.language, self._state.value, state.value)
            self._state = state

    def _touch(self) -> None:
        """Record successful protocol activity."""
        with self._lock:
            self._last_activity = self.clock.now()
            self._last_activity_at = utcnow()
            if self._state is ServerState.DEGRADED and not self._restart_needed:
                log.info("%s language server restored to healthy state", self.language)
                self._state = ServerState.READY
                self._healthy = True

    def is_stale(self, now: float | None = None) -> bool:
        """True when no protocol activity happened within the heartbeat timeout."""
        now = self.clock.now() if now is None else now
        return now - self._last_activity > self.settings.heartbeat_timeout

    def mark_degraded(self, reason: str) -> None:
        """Flip to DEGRADED (only from READY); does not restart anything."""
        with self._lock:
            if self._state is not ServerState.READY:
                return
            log.warning("%s language server degraded: %s", self.language, reason)
            self._state = ServerState.DEGRADED
            self._healthy = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> dict[str, Any]:
        """Start the server and run the initialize handshake.

        Returns:
            The server's capabilities.

        Raises:
            BinaryNotFoundError / ProcessSpawnError: The process could not start.
            HandshakeTimeoutError: No initialize response in time.
            HandshakeError: The handshake failed or was malformed.
        """
        with self._lock:
            if self._state in (ServerState.READY, ServerState.DEGRADED):
                return self.server_capabilities
            if self._state is ServerState.SHUT_DOWN:
                raise NotInitializedError(f"{self.language} language server client is shut down")
            if self._state is ServerState.INITIALIZING:
                raise NotInitializedError(f"{self.language} language server is already initializing")
            restarting = self._state is ServerState.RESTARTING
            self._state = ServerState.INITIALIZING

        context = ErrorContext(operation="initialize", language=self.language, component="client")
        try:
            transport = self._transport_factory(self.config, self.root, self.settings)
        except TomosError:
            self._set_state(ServerState.RESTARTING if restarting else ServerState.UNINITIALIZED)
            raise

        connection = Connection(
            transport,
            notification_handler=self._on_notification,
            request_handler=self._on_server_request,
            close_handler=self._on_transport_closed,
        )
        connection.start()

        try:
            result = connection.send_request(
                "initialize", self._initialize_params(), timeout=self.settings.handshake_timeout
            )
        except RequestTimeoutError as e:
            connection.close()
            self._set_state(ServerState.RESTARTING if restarting else ServerState.UNINITIALIZED)
            raise HandshakeTimeoutError(
                f"{self.language} language server did not answer initialize "
                f"within {self.settings.handshake_timeout:.1f}s",
                context=context,
                original_error=e,
            ) from e
        except TomosError as e:
            connection.close()
            self._set_state(ServerState.RESTARTING if restarting else ServerState.UNINITIALIZED)
            raise HandshakeError(
                f"{self.language} language server initialize failed: {e.message}",
                context=context,
                original_error=e,
            ) from e

        if not isinstance(result, dict) or not isinstance(result.get("capabilities"), dict):
            connection.close()
            self._set_state(ServerState.RESTARTING if restarting else ServerState.UNINITIALIZED)
            raise HandshakeError(
                f"{self.language} language server returned a malformed initialize result",
                context=context,
            )

        connection.send_notification("initialized", {})
        with self._lock:
            self._connection = connection
            self.server_capabilities = result["capabilities"]
            self._state = ServerState.READY
            self._healthy = True
        self._touch()
        server_info = result.get("serverInfo") or {}
        log.info(
            "%s language server initialized (%s %s)",
            self.language, server_info.get("name", self.config.command), server_info.get("version", ""),
        )
        return self.server_capabilities

    def _initialize_params(self) -> dict[str, Any]:
        root_uri = path_to_uri(self.root)
        params: dict[str, Any] = {
            "processId": os.getpid(),
            "clientInfo": {"name": "tomos"},
            "rootUri": root_uri,
            "rootPath": self.root,
            "workspaceFolders": [{"uri": root_uri, "name": os.path.basename(self.root) or self.root}],
            "capabilities": client_capabilities(),
            "trace": "off",
        }
        if self.config.initialization_options is not None:
            params["initializationOptions"] = self.config.initialization_options
        return params

    def shutdown(self) -> None:
        """Shut the server down for good. Safe to call in any state."""
        with self._lock:
            if self._state is ServerState.SHUT_DOWN:
                return
            self._state = ServerState.SHUT_DOWN
            connection, self._connection = self._connection, None
            backoff, self._backoff_call = self._backoff_call, None
        if backoff is not None:
            backoff.cancel()
        if connection is not None:
            self._close_connection(connection)
        self.documents.clear()
        self._diagnostics.clear()
        log.info("%s language server shut down", self.language)

    def _close_connection(self, connection: Connection) -> None:
        """LSP shutdown/exit exchange, then tear the transport down."""
        if not connection.is_closed:
            try:
                connection.send_request("shutdown", timeout=self.settings.shutdown_timeout)
                connection.send_notification("exit")
            except TomosError as e:
                log.debug("%s language server did not shut down cleanly: %s", self.language, e)
        connection.close()

    def _on_transport_closed(self, event: TransportClosed) -> None:
        with self._lock:
            self._last_exit_code = event.exit_code
            if self._state in (ServerState.SHUT_DOWN, ServerState.UNINITIALIZED):
                return
            if self._state is ServerState.INITIALIZING and not self._restart_in_progress:
                # initialize() sees the failure itself
                return
            self._healthy = False
            if self._restart_in_progress:
                log.warning("%s language server exited during restart (code %s)", self.language, event.exit_code)
                return
            self._restart_needed = True
            self._state = ServerState.DEGRADED
        if event.is_crash:
            log.error(
                "%s language server crashed (code %s): %s",
                self.language, event.exit_code, event.error or event.reason,
            )
        else:
            log.warning("%s language server went away: %s", self.language, event.reason)
        for listener in list(self._exit_listeners):
            listener(self)

    # ------------------------------------------------------------------
    # Restart
    # ------------------------------------------------------------------

    def request_restart(self) -> bool:
        """Begin a supervised restart unless one is already running.

        Tears the current session down, then schedules re-initialization
        and document replay after the restart backoff on the clock.

        Returns:
            True if this call started a restart, False if coalesced.
        """
        with self._lock:
            if self._state is ServerState.SHUT_DOWN:
                return False
            if self._restart_in_progress:
                log.debug("Restart of %s language server already in progress, skipping", self.language)
                return False
            self._restart_in_progress = True
            self._healthy = False
            self._state = ServerState.RESTARTING
            connection, self._connection = self._connection, None

        log.info("Restarting %s language server", self.language)
        if connection is not None:
            self._close_connection(connection)
        with self._lock:
            self._backoff_call = self.clock.call_later(self.settings.restart_backoff, self._complete_restart)
        return True

    def _complete_restart(self) -> None:
        with self._lock:
            self._backoff_call = None
            if self._state is not ServerState.RESTARTING:
                self._restart_in_progress = False
                return
        try:
            self.initialize()
            replayed = self._replay_documents()
        except TomosError as e:
            log.error("Failed to restart %s language server: %s", self.language, e.message)
            with self._lock:
                if self._state is not ServerState.SHUT_DOWN:
                    self._state = ServerState.DEGRADED
                    self._healthy = False
                    self._restart_needed = True
                self._restart_in_progress = False
            return

        with self._lock:
            self._restart_needed = False
            self._restart_in_progress = False
            self._restart_count += 1
            self._healthy = True
        log.info("Restarted %s language server (%d documents reopened)", self.language, replayed)

    def _replay_documents(self) -> int:
        """Reopen every tracked document at version 1 on the new session."""
        self.documents.reset_versions()
        connection = self._connection
        if connection is None:
            return 0
        count = 0
        for doc in self.documents.snapshot():
            connection.send_notification("textDocument/didOpen", {"textDocument": self._item(doc)})
            count += 1
        return count

    # ------------------------------------------------------------------
    # Protocol plumbing
    # ------------------------------------------------------------------

    def _require_connection(self) -> Connection:
        with self._lock:
            if self._restart_in_progress or self._state is ServerState.RESTARTING:
                raise RestartInProgressError(
                    f"{self.language} language server is restarting",
                    context=ErrorContext(language=self.language),
                )
            if self._state not in (ServerState.READY, ServerState.DEGRADED) or self._connection is None:
                raise NotInitializedError(
                    f"{self.language} language server is not initialized ({self._state.value})",
                    context=ErrorContext(language=self.language),
                )
            return self._connection

    def request(self, method: str, params: Any = None, timeout: float | None = None) -> Any:
        """Send a request on the live session and return its result."""
        connection = self._require_connection()
        result = connection.send_request(method, params, timeout=timeout or self.settings.request_timeout)
        self._touch()
        return result

    def notify(self, method: str, params: Any = None) -> None:
        connection = self._require_connection()
        connection.send_notification(method, params)
        self._touch()

    def _on_notification(self, method: str, params: Any) -> None:
        if method == "textDocument/publishDiagnostics" and params:
            self._diagnostics[params["uri"]] = [Diagnostic.from_lsp(d) for d in params.get("diagnostics", [])]
        elif method == "window/logMessage" and params:
            log.debug("[%s] %s", self.language, params.get("message", ""))
        elif method == "window/showMessage" and params:
            log.info("[%s] %s", self.language, params.get("message", ""))
        self._touch()

    def _on_server_request(self, method: str, params: Any) -> Any:
        if method == "workspace/configuration":
            return [None for _ in (params or {}).get("items", [])]
        if method == "workspace/applyEdit":
            edit = WorkspaceEdit.from_lsp((params or {}).get("edit"))
            self._apply_server_edit(edit)
            return {"applied": True}
        if method == "workspace/workspaceFolders":
            root_uri = path_to_uri(self.root)
            return [{"uri": root_uri, "name": os.path.basename(self.root) or self.root}]
        # client/registerCapability, window/workDoneProgress/create, ...
        return None

    def _apply_server_edit(self, edit: WorkspaceEdit) -> None:
        """Apply a server-initiated edit to tracked documents and echo it back."""
        for uri, edits in edit.changes.items():
            doc = self.documents.get(uri)
            if doc is None:
                log.debug("Ignoring server edit for untracked document %s", uri)
                continue
            self.change_document(uri, [ContentChange(text=apply_text_edits(doc.content, edits))])

    # ------------------------------------------------------------------
    # Document synchronization
    # ------------------------------------------------------------------

    def _item(self, doc: OpenDocument) -> dict[str, Any]:
        return {"uri": doc.uri, "languageId": doc.language_id, "version": doc.version, "text": doc.content}

    def open_document(self, uri: str, content: str, language_id: str | None = None) -> OpenDocument:
        """Open a document at version 1; re-opening sends the new text as a change."""
        self._require_connection()
        if self.documents.is_open(uri):
            return self.change_document(uri, [ContentChange(text=content)])
        doc = self.documents.open(uri, content, language_id or self.config.language_id or self.language)
        self.notify("textDocument/didOpen", {"textDocument": self._item(doc)})
        return doc

    def change_document(self, uri: str, changes: Iterable[ContentChange]) -> OpenDocument:
        """Apply changes to the mirror, bump the version and send didChange.

        The mirror only keeps changes the server received: if sending
        fails, the update is reverted before the error propagates.

        Raises:
            DocumentNotOpenError: If the uri is not tracked.
            ConnectionClosedError: If the notification could not be sent.
        """
        self._require_connection()
        changes = list(changes)
        previous = self.documents.require(uri)
        content, version = previous.content, previous.version
        doc = self.documents.update(uri, changes)
        try:
            self.notify(
                "textDocument/didChange",
                {
                    "textDocument": {"uri": uri, "version": doc.version},
                    "contentChanges": [c.to_lsp() for c in changes],
                },
            )
        except ConnectionClosedError:
            self.documents.revert(uri, content, version)
            raise
        return doc

    def save_document(self, uri: str, content: str | None = None) -> OpenDocument:
        """Send didSave with the mirrored text.

        New content that differs from the mirror is first sent as a full
        change, so the saved text is never older than the mirror.
        """
        self._require_connection()
        doc = self.documents.require(uri)
        if content is not None and content != doc.content:
            doc = self.change_document(uri, [ContentChange(text=content)])
        self.notify("textDocument/didSave", {"textDocument": {"uri": uri}, "text": doc.content})
        return doc

    def close_document(self, uri: str) -> None:
        if not self.documents.is_open(uri):
            log.debug("close_document: %s is not open", uri)
            return
        self.notify("textDocument/didClose", {"textDocument": {"uri": uri}})
        self.documents.remove(uri)
        self._diagnostics.pop(uri, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _text_document_position(uri: str, position: Position) -> dict[str, Any]:
        return {"textDocument": {"uri": uri}, "position": position.to_lsp()}

    def document_symbols(self, uri: str) -> list[dict[str, Any]]:
        """Raw documentSymbol result (DocumentSymbol or SymbolInformation list)."""
        result = self.request("textDocument/documentSymbol", {"textDocument": {"uri": uri}})
        return result or []

    def hover(self, uri: str, position: Position) -> str | None:
        result = self.request("textDocument/hover", self._text_document_position(uri, position))
        return hover_text(result)

    def completion(self, uri: str, position: Position) -> list[CompletionItem]:
        result = self.request("textDocument/completion", self._text_document_position(uri, position))
        if not result:
            return []
        items = result.get("items", []) if isinstance(result, dict) else result
        return [CompletionItem.from_lsp(item) for item in items]

    def definition(self, uri: str, position: Position) -> list[Location]:
        result = self.request("textDocument/definition", self._text_document_position(uri, position))
        if not result:
            return []
        if isinstance(result, dict):
            result = [result]
        return [Location.from_lsp(loc) for loc in result]

    def references(self, uri: str, position: Position, include_declaration: bool = True) -> list[Location]:
        params = self._text_document_position(uri, position)
        params["context"] = {"includeDeclaration": include_declaration}
        result = self.request("textDocument/references", params)
        return [Location.from_lsp(loc) for loc in result or []]

    def rename(self, uri: str, position: Position, new_name: str) -> WorkspaceEdit:
        params = self._text_document_position(uri, position)
        params["newName"] = new_name
        return WorkspaceEdit.from_lsp(self.request("textDocument/rename", params))

    def diagnostics(self, uri: str) -> list[Diagnostic]:
        """Diagnostics for a document: pulled when supported, else last published."""
        if self.server_capabilities.get("diagnosticProvider"):
            try:
                result = self.request("textDocument/diagnostic", {"textDocument": {"uri": uri}})
            except ProtocolError as e:
                log.debug("Pull diagnostics failed for %s: %s", uri, e)
            else:
                if isinstance(result, dict) and result.get("kind") == "full":
                    self._diagnostics[uri] = [Diagnostic.from_lsp(d) for d in result.get("items", [])]
        return list(self._diagnostics.get(uri, []))

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def apply_workspace_edit(self, edit: WorkspaceEdit, label: str = "Workspace Edit") -> None:
        """Apply an edit through the server and splice it into the mirrors.

        Every affected document must be open. A server that does not
        implement ``workspace/applyEdit`` receives the edits as incremental
        didChange notifications instead.

        Raises:
            DocumentNotOpenError: An affected document is not tracked.
            ApplyEditRejectedError: The server answered ``applied: false``.
        """
        docs = {uri: self.documents.require(uri) for uri in edit.uris}
        try:
            result = self.request("workspace/applyEdit", {"label": label, "edit": edit.to_lsp()})
        except ProtocolError as e:
            if not e.is_method_not_found:
                raise
            log.debug("%s language server has no workspace/applyEdit, sending didChange", self.language)
            for uri, edits in edit.changes.items():
                changes = [ContentChange(text=te.new_text, range=te.range) for te in bottom_up(edits)]
                self.change_document(uri, changes)
            return

        if isinstance(result, dict) and not result.get("applied", False):
            raise ApplyEditRejectedError(
                result.get("failureReason"),
                context=ErrorContext(operation="apply_edit", language=self.language),
            )

        for uri, edits in edit.changes.items():
            new_content = apply_text_edits(docs[uri].content, edits)
            self.documents.update(uri, [ContentChange(text=new_content)])
        log.debug("Applied %d edit(s) across %d file(s)", edit.edit_count, len(edit.uris))
