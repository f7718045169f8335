"""Surgical edit service: symbol-level edits through language servers.

Turns intents such as "replace function F" or "rename X to Y" into
workspace edits resolved against live documentSymbol/rename results,
applies them through the language server, and mirrors the result onto
disk.

Every affected file is synchronized from disk into the document tracker
before anything is resolved, so positions always refer to current file
content. The disk is only written after the server accepted the edit.
"""

from __future__ import annotations

import os
from typing import Any, Iterable

from tomos.lsp.client import LanguageServerClient
from tomos.lsp.manager import LspManager
from tomos.lsp.symbols import SymbolRetriever
from tomos.lsp.utils import normalize_uri, resolve_document_path, uri_to_relative
from tomos.types.core import (
    CompletionItem,
    ContentChange,
    Diagnostic,
    EditOperation,
    EditOperationType,
    EditResult,
    Location,
    Position,
    Range,
    Symbol,
    TextEdit,
    WorkspaceEdit,
)
from tomos.types.errors import (
    ConnectionClosedError,
    ErrorCode,
    ErrorContext,
    FileAccessError,
    InvalidOperationError,
    MirrorDesyncError,
    ProtocolError,
    RequestTimeoutError,
    SymbolNotFoundError,
    TomosError,
)
from tomos.utils.logger import logger, with_correlation_id

# Query failures that degrade to an empty answer.
_SOFT_QUERY_ERRORS = (RequestTimeoutError, ProtocolError, ConnectionClosedError)


class SurgicalEditService:
    """Symbol-level navigation and editing for one workspace.

    Usage:
        ctx = WorkspaceContext("/path/to/project")
        svc = ctx.get_edit_service()
        result = svc.replace_symbol("src/calc.py", "add", "def add(a, b):\\n    return a + b\\n")
    """

    def __init__(self, root: str, lsp_manager: LspManager, encoding: str | None = None) -> None:
        self._root = os.path.abspath(root)
        self._lsp_manager = lsp_manager
        self._encoding = encoding or lsp_manager.settings.encoding

    @property
    def root(self) -> str:
        return self._root

    # -----------------------------------------------------------------
    # Files
    # -----------------------------------------------------------------

    def _resolve(self, uri: str) -> tuple[str, str]:
        """Canonical uri and checked absolute path for a uri or relative path."""
        uri = normalize_uri(uri, self._root)
        return uri, resolve_document_path(uri, self._root)

    def read_file(self, uri: str) -> str:
        """Read a workspace file.

        Raises:
            SecurityViolationError: The file lies outside the workspace.
            FileAccessError: The file is missing or cannot be read.
        """
        uri, path = self._resolve(uri)
        try:
            with open(path, encoding=self._encoding, newline="") as f:
                return f.read()
        except OSError as e:
            raise FileAccessError(uri, path, e) from e

    def write_file(self, uri: str, content: str) -> None:
        """Write a workspace file, creating parent directories as needed.

        Raises:
            SecurityViolationError: The file lies outside the workspace.
            FileAccessError: The file cannot be written.
        """
        uri, path = self._resolve(uri)
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding=self._encoding, newline="") as f:
                f.write(content)
        except OSError as e:
            raise FileAccessError(uri, path, e, operation="write") from e

    def _client(self, uri: str) -> tuple[LanguageServerClient, str]:
        """Client for a document, with the document synchronized from disk."""
        uri, _ = self._resolve(uri)
        client = self._lsp_manager.get_client_for_uri(uri)
        self._sync_from_disk(client, uri)
        return client, uri

    def _sync_from_disk(self, client: LanguageServerClient, uri: str) -> None:
        content = self.read_file(uri)
        doc = client.documents.get(uri)
        if doc is None:
            client.open_document(uri, content)
        elif doc.content != content:
            logger.debug(f"{uri_to_relative(uri, self._root)} changed on disk, resyncing")
            client.change_document(uri, [ContentChange(text=content)])

    # -----------------------------------------------------------------
    # Navigation
    # -----------------------------------------------------------------

    def find_symbol(self, uri: str, name: str) -> Symbol | None:
        """First symbol named ``name`` (or matching a ``Container/name`` path)."""
        client, uri = self._client(uri)
        return SymbolRetriever(client).find_symbol(uri, name)

    def get_all_symbols(self, uri: str) -> list[Symbol]:
        client, uri = self._client(uri)
        return SymbolRetriever(client).get_all_symbols(uri)

    def get_symbol_at_position(self, uri: str, line: int, character: int) -> Symbol | None:
        client, uri = self._client(uri)
        return SymbolRetriever(client).get_symbol_at_position(uri, Position(line, character))

    def find_references(self, uri: str, name: str, include_declaration: bool = True) -> list[Location]:
        """Locations referencing the named symbol across the workspace."""
        client, uri = self._client(uri)
        symbol = SymbolRetriever(client).find_symbol(uri, name)
        if symbol is None:
            return []
        try:
            return client.references(uri, symbol.selection_range.start, include_declaration)
        except _SOFT_QUERY_ERRORS as e:
            logger.warning(f"references failed for {name} in {uri}: {e}")
            return []

    def get_definition(self, uri: str, line: int, character: int) -> list[Location]:
        client, uri = self._client(uri)
        try:
            return client.definition(uri, Position(line, character))
        except _SOFT_QUERY_ERRORS as e:
            logger.warning(f"definition failed at {uri}:{line}:{character}: {e}")
            return []

    def get_type_inference(self, uri: str, line: int, character: int) -> str | None:
        """Hover text at a position (usually the inferred type), or None."""
        client, uri = self._client(uri)
        try:
            return client.hover(uri, Position(line, character))
        except _SOFT_QUERY_ERRORS as e:
            logger.warning(f"hover failed at {uri}:{line}:{character}: {e}")
            return None

    def get_code_completion(self, uri: str, line: int, character: int) -> list[CompletionItem]:
        client, uri = self._client(uri)
        try:
            return client.completion(uri, Position(line, character))
        except _SOFT_QUERY_ERRORS as e:
            logger.warning(f"completion failed at {uri}:{line}:{character}: {e}")
            return []

    def get_diagnostics(self, uri: str) -> list[Diagnostic]:
        client, uri = self._client(uri)
        return client.diagnostics(uri)

    def get_health(self) -> dict[str, dict[str, Any]]:
        """Health of every running language server, keyed by language."""
        return {language: health.to_dict() for language, health in self._lsp_manager.get_health().items()}

    # -----------------------------------------------------------------
    # Edits
    # -----------------------------------------------------------------

    def insert_after_symbol(self, uri: str, name: str, code: str) -> EditResult:
        """Insert ``code`` on the line after the named symbol ends."""
        return self.perform_edit(EditOperation(EditOperationType.INSERT_AFTER, uri, name, code=code))

    def replace_symbol(self, uri: str, name: str, code: str) -> EditResult:
        """Replace the whole definition of the named symbol with ``code``."""
        return self.perform_edit(EditOperation(EditOperationType.REPLACE, uri, name, code=code))

    def delete_symbol(self, uri: str, name: str, code: str | None = None) -> EditResult:
        """Remove the whole definition of the named symbol."""
        return self.perform_edit(EditOperation(EditOperationType.DELETE, uri, name, code=code))

    def refactor_symbol(self, uri: str, old_name: str, new_name: str, dry_run: bool = False) -> EditResult:
        """Rename a symbol everywhere the language server knows about.

        With ``dry_run`` the edits are resolved and returned but nothing
        is applied.
        """
        return self.perform_edit(
            EditOperation(EditOperationType.REFACTOR, uri, old_name, new_name=new_name, dry_run=dry_run)
        )

    def perform_edit(self, op: EditOperation) -> EditResult:
        """Resolve and apply one edit. Never raises; failures are results."""
        try:
            return self._perform_edit(op)
        except TomosError as e:
            logger.warning(f"{op.type.value} '{op.symbol_name}' in {op.uri} failed: {e.message}")
            return EditResult(success=False, message=e.message, error=e.code.value, dry_run=op.dry_run)
        except Exception as e:
            logger.exception(f"Unexpected error during {op.type.value} '{op.symbol_name}' in {op.uri}")
            return EditResult(
                success=False,
                message=f"Unexpected error: {e}",
                error=ErrorCode.INTERNAL_ERROR.value,
                dry_run=op.dry_run,
            )

    def perform_batch_edits(self, ops: Iterable[EditOperation]) -> list[EditResult]:
        """Run edits in order, stopping after the first failure.

        Returns the results gathered so far; edits that already succeeded
        stay applied.
        """
        ops = list(ops)
        results: list[EditResult] = []
        with with_correlation_id(operation="batch_edit") as scope:
            logger.info(f"Starting batch of {len(ops)} edit(s)")
            for i, op in enumerate(ops, 1):
                result = self.perform_edit(op)
                results.append(result)
                if not result.success:
                    logger.warning(f"Batch stopped at operation {i}/{len(ops)}: {result.message}")
                    break
            else:
                logger.info(f"Batch of {len(ops)} edit(s) completed in {scope.elapsed:.2f}s")
        return results

    def _perform_edit(self, op: EditOperation) -> EditResult:
        self._validate(op)
        client, uri = self._client(op.uri)
        symbol = SymbolRetriever(client).find_symbol(uri, op.symbol_name)
        if symbol is None:
            raise SymbolNotFoundError(op.symbol_name, uri)

        edit = self._resolve_edit(client, op, uri, symbol)
        relative = uri_to_relative(uri, self._root)
        if op.dry_run:
            return EditResult(
                success=True,
                message=f"Dry run: {edit.edit_count} edit(s) in {len(edit.uris)} file(s)",
                edits=edit,
                dry_run=True,
            )
        if edit.is_empty():
            return EditResult(success=True, message=f"No changes for '{op.symbol_name}'", edits=edit)

        self._apply(client, edit, label=f"{op.type.value} {op.symbol_name}")
        logger.info(f"{op.type.value} '{op.symbol_name}' in {relative}: {edit.edit_count} edit(s)")
        return EditResult(success=True, message=self._describe(op, relative, edit), edits=edit)

    @staticmethod
    def _validate(op: EditOperation) -> None:
        context = ErrorContext(operation=op.type.value, uri=op.uri)
        if not op.uri:
            raise InvalidOperationError("Edit operation has no uri", context=context)
        if not op.symbol_name:
            raise InvalidOperationError("Edit operation has no symbol name", context=context)
        if op.type in (EditOperationType.INSERT_AFTER, EditOperationType.REPLACE) and op.code is None:
            raise InvalidOperationError(f"{op.type.value} requires code", context=context)
        if op.type is EditOperationType.REFACTOR and not op.new_name:
            raise InvalidOperationError("refactor requires new_name", context=context)

    def _resolve_edit(
        self, client: LanguageServerClient, op: EditOperation, uri: str, symbol: Symbol
    ) -> WorkspaceEdit:
        if op.type is EditOperationType.INSERT_AFTER:
            doc = client.documents.require(uri)
            return WorkspaceEdit.single(uri, insertion_after(doc.content, symbol.range, op.code or ""))
        if op.type is EditOperationType.REPLACE:
            return WorkspaceEdit.single(uri, TextEdit(symbol.range, op.code or ""))
        if op.type is EditOperationType.DELETE:
            return WorkspaceEdit.single(uri, TextEdit(symbol.range, ""))
        if op.type is EditOperationType.REFACTOR:
            return client.rename(uri, symbol.selection_range.start, op.new_name or "")
        raise InvalidOperationError(f"Unknown edit operation: {op.type}")

    def _apply(self, client: LanguageServerClient, edit: WorkspaceEdit, label: str) -> None:
        """Apply through the server, then write every touched mirror to disk."""
        targets = {uri: self._resolve(uri)[1] for uri in edit.uris}
        for uri in targets:
            self._sync_from_disk(client, uri)

        client.apply_workspace_edit(edit, label=label)

        for uri, path in targets.items():
            content = client.documents.require(uri).content
            try:
                with open(path, "w", encoding=self._encoding, newline="") as f:
                    f.write(content)
            except OSError as e:
                self._resync_after_failed_write(client, uri)
                raise MirrorDesyncError(
                    f"Edit applied by the language server but writing {path} failed: {e}",
                    context=ErrorContext(operation="write_mirror", uri=uri),
                    original_error=e,
                ) from e

    def _resync_after_failed_write(self, client: LanguageServerClient, uri: str) -> None:
        try:
            self._sync_from_disk(client, uri)
        except TomosError as e:
            logger.error(f"Could not resync {uri} with disk after a failed write: {e}")

    @staticmethod
    def _describe(op: EditOperation, relative: str, edit: WorkspaceEdit) -> str:
        if op.type is EditOperationType.INSERT_AFTER:
            return f"Inserted code after '{op.symbol_name}' in {relative}"
        if op.type is EditOperationType.REPLACE:
            return f"Replaced '{op.symbol_name}' in {relative}"
        if op.type is EditOperationType.DELETE:
            return f"Deleted '{op.symbol_name}' from {relative}"
        return (
            f"Renamed '{op.symbol_name}' to '{op.new_name}': "
            f"{edit.edit_count} edit(s) in {len(edit.uris)} file(s)"
        )


def insertion_after(content: str, symbol_range: Range, code: str) -> TextEdit:
    """The edit that places ``code`` on its own line after a symbol.

    The insertion point is the start of the line following the symbol's
    last line. When that last line is the final line of a file without a
    trailing newline, the code goes at its end behind a newline instead.
    """
    end = symbol_range.end
    last_line = end.line
    if end.character == 0 and end.line > symbol_range.start.line:
        # range ends at the start of the next line
        last_line -= 1

    lines = content.split("\n")
    if last_line >= len(lines) - 1 and not content.endswith("\n"):
        final = len(lines) - 1
        return TextEdit(Range.at(final, len(lines[final])), "\n" + code + "\n")
    return TextEdit(Range.at(last_line + 1, 0), code + "\n")
