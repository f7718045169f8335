"""Symbol navigation over documentSymbol results.

Servers answer ``textDocument/documentSymbol`` either with a hierarchical
``DocumentSymbol`` tree or with a flat ``SymbolInformation`` list. Both are
flattened here into ``Symbol`` objects in server order (a pre-order walk of
the tree), each carrying the name path of its container.

Lookups are never cached: every call asks the server again, so positions
are always current after an edit.
"""

from __future__ import annotations

import logging
from typing import Any

from tomos.lsp.client import LanguageServerClient
from tomos.types.core import Position, Range, Symbol
from tomos.types.errors import ConnectionClosedError, ProtocolError, RequestTimeoutError

log = logging.getLogger(__name__)

# Failures that make a lookup come back empty instead of raising.
_SOFT_ERRORS = (RequestTimeoutError, ProtocolError, ConnectionClosedError)


def flatten_symbols(raw: list[dict[str, Any]]) -> list[Symbol]:
    """Flatten a documentSymbol result into server order."""
    symbols: list[Symbol] = []

    def walk(item: dict[str, Any], container: str | None) -> None:
        if "location" in item:
            # SymbolInformation
            rng = Range.from_lsp(item["location"]["range"])
            symbols.append(
                Symbol(
                    name=item["name"],
                    kind=item.get("kind", 0),
                    range=rng,
                    selection_range=rng,
                    container_name=item.get("containerName") or container,
                )
            )
            return

        rng = Range.from_lsp(item["range"])
        symbol = Symbol(
            name=item["name"],
            kind=item.get("kind", 0),
            range=rng,
            selection_range=Range.from_lsp(item.get("selectionRange") or item["range"]),
            container_name=container,
            detail=item.get("detail"),
        )
        symbols.append(symbol)
        for child in item.get("children") or []:
            walk(child, symbol.name_path)

    for item in raw:
        walk(item, None)
    return symbols


class NamePathMatcher:
    """Matches a symbol by plain name or by a ``Container/name`` path.

    - ``"method"``: any symbol with that exact name
    - ``"Class/method"``: symbols whose name path ends with those parts
    - ``"/Class/method"``: exactly that full name path
    """

    def __init__(self, pattern: str) -> None:
        self.pattern = pattern
        self._is_absolute = pattern.startswith("/")
        self._parts = [p for p in pattern.strip("/").split("/") if p]

    def matches(self, symbol: Symbol) -> bool:
        if not self._parts:
            return False
        if len(self._parts) == 1 and not self._is_absolute:
            return symbol.name == self._parts[0]
        actual = symbol.name_path.split("/")
        if self._is_absolute:
            return actual == self._parts
        return len(actual) >= len(self._parts) and actual[-len(self._parts):] == self._parts


class SymbolRetriever:
    """Symbol lookups for the documents of one client."""

    def __init__(self, client: LanguageServerClient) -> None:
        self.client = client

    def get_all_symbols(self, uri: str) -> list[Symbol]:
        """All symbols of a document in server order; ``[]`` when the query fails."""
        try:
            raw = self.client.document_symbols(uri)
        except _SOFT_ERRORS as e:
            log.warning("documentSymbol failed for %s: %s", uri, e)
            return []
        return flatten_symbols(raw)

    def find_symbol(self, uri: str, name: str) -> Symbol | None:
        """First symbol matching ``name`` in server order, or None."""
        matcher = NamePathMatcher(name)
        for symbol in self.get_all_symbols(uri):
            if matcher.matches(symbol):
                return symbol
        return None

    def find_symbols(self, uri: str, name: str) -> list[Symbol]:
        """Every symbol matching ``name``, in server order."""
        matcher = NamePathMatcher(name)
        return [s for s in self.get_all_symbols(uri) if matcher.matches(s)]

    def get_symbol_at_position(self, uri: str, position: Position) -> Symbol | None:
        """The innermost symbol whose range contains ``position``."""
        best: Symbol | None = None
        for symbol in self.get_all_symbols(uri):
            if not symbol.range.contains(position):
                continue
            if best is None or best.range.contains_range(symbol.range):
                best = symbol
        return best
