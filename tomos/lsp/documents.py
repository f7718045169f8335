"""Document tracker: the client's mirror of every open document.

For each open uri the tracker holds the version last sent to the server and
the full text the server should currently see. Range edits are applied to
the mirror by line/character arithmetic so the mirror stays identical to
the server's view without re-reading the file.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass

from tomos.types.core import ContentChange, Range, TextEdit
from tomos.types.errors import DocumentNotOpenError


@dataclass
class OpenDocument:
    """One tracked document."""

    uri: str
    version: int
    content: str
    language_id: str


def _line_starts(content: str) -> list[int]:
    starts = [0]
    for i, ch in enumerate(content):
        if ch == "\n":
            starts.append(i + 1)
    return starts


def offset_at(content: str, line: int, character: int, line_starts: list[int] | None = None) -> int:
    """Convert a (line, character) position into a string offset.

    Positions past the end of a line clamp to the line end, and lines past
    the end of the document clamp to the end of the text.
    """
    starts = line_starts if line_starts is not None else _line_starts(content)
    if line < 0:
        return 0
    if line >= len(starts):
        return len(content)
    start = starts[line]
    end = starts[line + 1] - 1 if line + 1 < len(starts) else len(content)
    return start + max(0, min(character, end - start))


def apply_text_edit(content: str, range: Range, new_text: str) -> str:
    """Splice ``new_text`` into ``content`` over ``range``."""
    starts = _line_starts(content)
    start = offset_at(content, range.start.line, range.start.character, starts)
    end = offset_at(content, range.end.line, range.end.character, starts)
    if end < start:
        start, end = end, start
    return content[:start] + new_text + content[end:]


def bottom_up(edits: Iterable[TextEdit]) -> list[TextEdit]:
    """Order edits so that applying them one by one never shifts a later one.

    Later positions come first. Edits at the same position are reversed, so
    inserts there end up in their original array order.
    """
    indexed = sorted(
        enumerate(edits),
        key=lambda item: (item[1].range.start, item[1].range.end, item[0]),
        reverse=True,
    )
    return [edit for _, edit in indexed]


def apply_text_edits(content: str, edits: Iterable[TextEdit]) -> str:
    """Apply a set of non-overlapping edits, all expressed against ``content``."""
    for edit in bottom_up(edits):
        content = apply_text_edit(content, edit.range, edit.new_text)
    return content


def apply_content_changes(content: str, changes: Iterable[ContentChange]) -> str:
    """Apply didChange entries in order; each applies to the previous result."""
    for change in changes:
        if change.range is None:
            content = change.text
        else:
            content = apply_text_edit(content, change.range, change.text)
    return content


class DocumentTracker:
    """Thread-safe table of open documents keyed by uri."""

    def __init__(self) -> None:
        self._documents: dict[str, OpenDocument] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)

    def __contains__(self, uri: str) -> bool:
        return self.is_open(uri)

    def is_open(self, uri: str) -> bool:
        with self._lock:
            return uri in self._documents

    def get(self, uri: str) -> OpenDocument | None:
        with self._lock:
            return self._documents.get(uri)

    def require(self, uri: str) -> OpenDocument:
        doc = self.get(uri)
        if doc is None:
            raise DocumentNotOpenError(uri)
        return doc

    def open(self, uri: str, content: str, language_id: str) -> OpenDocument:
        """Register a newly opened document at version 1."""
        doc = OpenDocument(uri=uri, version=1, content=content, language_id=language_id)
        with self._lock:
            self._documents[uri] = doc
        return doc

    def update(self, uri: str, changes: Iterable[ContentChange]) -> OpenDocument:
        """Apply changes to the mirror and bump the version.

        Raises:
            DocumentNotOpenError: If the uri is not tracked.
        """
        with self._lock:
            doc = self._documents.get(uri)
            if doc is None:
                raise DocumentNotOpenError(uri)
            doc.content = apply_content_changes(doc.content, changes)
            doc.version += 1
            return doc

    def revert(self, uri: str, content: str, version: int) -> None:
        """Undo the latest update of ``uri`` if nothing has updated it since."""
        with self._lock:
            doc = self._documents.get(uri)
            if doc is not None and doc.version == version + 1:
                doc.content = content
                doc.version = version

    def remove(self, uri: str) -> OpenDocument | None:
        with self._lock:
            return self._documents.pop(uri, None)

    def uris(self) -> list[str]:
        with self._lock:
            return list(self._documents)

    def snapshot(self) -> list[OpenDocument]:
        """Copies of every tracked document, for replay after a restart."""
        with self._lock:
            return [
                OpenDocument(uri=d.uri, version=d.version, content=d.content, language_id=d.language_id)
                for d in self._documents.values()
            ]

    def reset_versions(self) -> None:
        """Set every document back to version 1 (a fresh server session)."""
        with self._lock:
            for doc in self._documents.values():
                doc.version = 1

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()
