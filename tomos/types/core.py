"""
Core types shared by the protocol session and the edit engine.

Positions and ranges are 0-based (line, character) pairs, as in LSP. Every
type converts to and from the plain dicts that travel over the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from tomos.constants import utcnow


class SymbolKind(IntEnum):
    """LSP SymbolKind values."""

    FILE = 1
    MODULE = 2
    NAMESPACE = 3
    PACKAGE = 4
    CLASS = 5
    METHOD = 6
    PROPERTY = 7
    FIELD = 8
    CONSTRUCTOR = 9
    ENUM = 10
    INTERFACE = 11
    FUNCTION = 12
    VARIABLE = 13
    CONSTANT = 14
    STRING = 15
    NUMBER = 16
    BOOLEAN = 17
    ARRAY = 18
    OBJECT = 19
    KEY = 20
    NULL = 21
    ENUM_MEMBER = 22
    STRUCT = 23
    EVENT = 24
    OPERATOR = 25
    TYPE_PARAMETER = 26


class ServerState(str, Enum):
    """Lifecycle of one language server client."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    DEGRADED = "degraded"
    RESTARTING = "restarting"
    SHUT_DOWN = "shut_down"


class EditOperationType(str, Enum):
    """Kinds of symbol-level edits."""

    INSERT_AFTER = "insert_after"
    REPLACE = "replace"
    DELETE = "delete"
    REFACTOR = "refactor"


# ---------------------------------------------------------------------------
# Positions and edits
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Position:
    """A 0-based line/character position."""

    line: int
    character: int

    def to_lsp(self) -> dict[str, int]:
        return {"line": self.line, "character": self.character}

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Position:
        return cls(line=int(data["line"]), character=int(data["character"]))


@dataclass(frozen=True)
class Range:
    """A span between two positions; containment includes both ends."""

    start: Position
    end: Position

    def contains(self, position: Position) -> bool:
        """Check if a position lies within this range (inclusive of both ends)."""
        return self.start <= position <= self.end

    def contains_range(self, other: Range) -> bool:
        return self.start <= other.start and other.end <= self.end

    def to_lsp(self) -> dict[str, Any]:
        return {"start": self.start.to_lsp(), "end": self.end.to_lsp()}

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Range:
        return cls(start=Position.from_lsp(data["start"]), end=Position.from_lsp(data["end"]))

    @classmethod
    def at(cls, line: int, character: int = 0) -> Range:
        """An empty range (insertion point)."""
        pos = Position(line, character)
        return cls(start=pos, end=pos)


@dataclass(frozen=True)
class TextEdit:
    """Replacement of one span of text."""

    range: Range
    new_text: str

    def to_lsp(self) -> dict[str, Any]:
        return {"range": self.range.to_lsp(), "newText": self.new_text}

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> TextEdit:
        return cls(range=Range.from_lsp(data["range"]), new_text=data.get("newText", ""))


@dataclass(frozen=True)
class ContentChange:
    """One entry of a didChange notification: full text when range is None."""

    text: str
    range: Range | None = None

    def to_lsp(self) -> dict[str, Any]:
        if self.range is None:
            return {"text": self.text}
        return {"range": self.range.to_lsp(), "text": self.text}


@dataclass
class WorkspaceEdit:
    """A set of text edits keyed by document uri, possibly spanning files."""

    changes: dict[str, list[TextEdit]] = field(default_factory=dict)

    @property
    def uris(self) -> list[str]:
        return list(self.changes.keys())

    @property
    def edit_count(self) -> int:
        return sum(len(edits) for edits in self.changes.values())

    def is_empty(self) -> bool:
        return self.edit_count == 0

    def to_lsp(self) -> dict[str, Any]:
        return {
            "changes": {
                uri: [edit.to_lsp() for edit in edits]
                for uri, edits in self.changes.items()
            }
        }

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {uri: [edit.to_lsp() for edit in edits] for uri, edits in self.changes.items()}

    @classmethod
    def single(cls, uri: str, edit: TextEdit) -> WorkspaceEdit:
        return cls(changes={uri: [edit]})

    @classmethod
    def from_lsp(cls, data: dict[str, Any] | None) -> WorkspaceEdit:
        """Parse both the ``changes`` and the ``documentChanges`` forms.

        Resource operations (create/rename/delete file) inside
        ``documentChanges`` are skipped.
        """
        result = cls()
        if not data:
            return result

        for uri, edits in (data.get("changes") or {}).items():
            result.changes.setdefault(uri, []).extend(TextEdit.from_lsp(e) for e in edits)

        for doc_change in data.get("documentChanges") or []:
            if "textDocument" not in doc_change:
                continue
            uri = doc_change["textDocument"]["uri"]
            result.changes.setdefault(uri, []).extend(
                TextEdit.from_lsp(e) for e in doc_change.get("edits", [])
            )
        return result


@dataclass(frozen=True)
class Location:
    """A range inside a document."""

    uri: str
    range: Range

    def to_dict(self) -> dict[str, Any]:
        return {"uri": self.uri, "range": self.range.to_lsp()}

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Location:
        # LocationLink uses targetUri/targetRange
        if "targetUri" in data:
            return cls(uri=data["targetUri"], range=Range.from_lsp(data["targetRange"]))
        return cls(uri=data["uri"], range=Range.from_lsp(data["range"]))


# ---------------------------------------------------------------------------
# Symbols
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Symbol:
    """A named code entity reported by a documentSymbol query.

    ``range`` covers the full definition (signature and body);
    ``selection_range`` covers only the name. Symbols are recomputed on
    every query and never cached across edits.
    """

    name: str
    kind: int
    range: Range
    selection_range: Range
    container_name: str | None = None
    detail: str | None = None

    @property
    def kind_name(self) -> str:
        """Human-readable symbol kind name."""
        try:
            return SymbolKind(self.kind).name.lower()
        except ValueError:
            return "unknown"

    @property
    def name_path(self) -> str:
        """Container path plus name (e.g., 'Calculator/add')."""
        if self.container_name:
            return f"{self.container_name}/{self.name}"
        return self.name

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "kind": self.kind_name,
            "name_path": self.name_path,
            "range": self.range.to_lsp(),
        }
        if self.container_name:
            d["container_name"] = self.container_name
        if self.detail:
            d["detail"] = self.detail
        return d


# ---------------------------------------------------------------------------
# Diagnostics and completion
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Diagnostic:
    """A problem reported by the server for a range of a document."""

    range: Range
    message: str
    severity: int | None = None
    source: str | None = None
    code: str | int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "range": self.range.to_lsp(),
            "message": self.message,
            "severity": self.severity,
            "source": self.source,
            "code": self.code,
        }

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> Diagnostic:
        return cls(
            range=Range.from_lsp(data["range"]),
            message=data.get("message", ""),
            severity=data.get("severity"),
            source=data.get("source"),
            code=data.get("code"),
        )


@dataclass(frozen=True)
class CompletionItem:
    """One completion proposal."""

    label: str
    kind: int | None = None
    detail: str | None = None
    insert_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "kind": self.kind,
            "detail": self.detail,
            "insert_text": self.insert_text,
        }

    @classmethod
    def from_lsp(cls, data: dict[str, Any]) -> CompletionItem:
        return cls(
            label=data.get("label", ""),
            kind=data.get("kind"),
            detail=data.get("detail"),
            insert_text=data.get("insertText"),
        )


# ---------------------------------------------------------------------------
# Edit engine types
# ---------------------------------------------------------------------------


@dataclass
class EditOperation:
    """A caller-issued edit intent, alive for one perform_edit call."""

    type: EditOperationType
    uri: str
    symbol_name: str
    code: str | None = None
    new_name: str | None = None
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EditOperation:
        """Build an operation from a JSON-style dict (used by batch files)."""
        return cls(
            type=EditOperationType(data["type"]),
            uri=data["uri"],
            symbol_name=data.get("symbol_name") or data.get("target") or "",
            code=data.get("code"),
            new_name=data.get("new_name"),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass
class EditResult:
    """Outcome of one edit operation. Failures never raise."""

    success: bool
    message: str
    edits: WorkspaceEdit | None = None
    error: str | None = None
    dry_run: bool = False

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.edits is not None:
            d["edits"] = self.edits.to_dict()
        if self.error is not None:
            d["error"] = self.error
        if self.dry_run:
            d["dry_run"] = True
        return d


@dataclass
class HealthState:
    """Supervision status of one client, as read by callers."""

    healthy: bool = True
    state: ServerState = ServerState.UNINITIALIZED
    last_activity: float = 0.0
    last_activity_at: datetime = field(default_factory=utcnow)
    restart_in_progress: bool = False
    restart_count: int = 0
    last_exit_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "last_activity_at": self.last_activity_at.isoformat(),
            "restart_in_progress": self.restart_in_progress,
            "restart_count": self.restart_count,
            "last_exit_code": self.last_exit_code,
        }
