"""
Pytest configuration and shared fixtures for Tomos tests.

``FakeLanguageServer`` stands in for a real language server process: it is
plugged in through ``InMemoryTransport`` and understands just enough LSP to
exercise the client and the edit engine (documentSymbol for Python
def/class blocks, hover, completion, references, rename, applyEdit and
publishDiagnostics). ``ManualClock`` only moves when a test advances it.
"""

from __future__ import annotations

import re
import threading
import time
from typing import Any, Callable

import pytest

from tomos.lsp.client import LanguageServerClient
from tomos.lsp.clock import Clock, ScheduledCall
from tomos.lsp.ls_config import LanguageServerConfig
from tomos.lsp.settings import ClientSettings
from tomos.lsp.transport import InMemoryTransport, Message
from tomos.services.workspace_context import WorkspaceContext

SAMPLE_PY = """import math


def add(a, b):
    return a + b


class Calculator:
    def multiply(self, a, b):
        return a * b

    def divide(self, a, b):
        return a / b


def subtract(a, b):
    return a - b
"""

HELPERS_PY = """from calc import add


def double(x):
    return add(x, x)
"""


# =============================================================================
# Helpers
# =============================================================================


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll until predicate() is true; events arrive on the dispatcher thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _offset(text: str, position: dict[str, int]) -> int:
    lines = text.split("\n")
    if position["line"] >= len(lines):
        return len(text)
    base = sum(len(line) + 1 for line in lines[: position["line"]])
    return base + min(position["character"], len(lines[position["line"]]))


def _splice(text: str, rng: dict[str, Any], new_text: str) -> str:
    return text[: _offset(text, rng["start"])] + new_text + text[_offset(text, rng["end"]):]


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def outline(text: str) -> list[dict[str, Any]]:
    """Hierarchical DocumentSymbols for the def/class blocks of Python source."""
    lines = text.split("\n")
    roots: list[dict[str, Any]] = []
    stack: list[tuple[int, dict[str, Any]]] = []
    for i, line in enumerate(lines):
        m = re.match(r"^(\s*)(def|class)\s+(\w+)", line)
        if not m:
            continue
        indent = len(m.group(1))
        end = i
        for j in range(i + 1, len(lines)):
            if not lines[j].strip():
                continue
            if _indent(lines[j]) <= indent:
                break
            end = j
        while stack and stack[-1][0] >= indent:
            stack.pop()
        if m.group(2) == "class":
            kind = 5
        else:
            kind = 6 if stack else 12
        name_col = m.start(3)
        symbol = {
            "name": m.group(3),
            "kind": kind,
            "range": {
                "start": {"line": i, "character": indent},
                "end": {"line": end, "character": len(lines[end])},
            },
            "selectionRange": {
                "start": {"line": i, "character": name_col},
                "end": {"line": i, "character": name_col + len(m.group(3))},
            },
            "children": [],
        }
        if stack:
            stack[-1][1]["children"].append(symbol)
        else:
            roots.append(symbol)
        stack.append((indent, symbol))
    return roots


# =============================================================================
# Fake language server
# =============================================================================


class FakeLanguageServer:
    """In-process language server answering through InMemoryTransport.

    Attributes:
        apply_edit_mode: "accept", "reject" or "missing" (MethodNotFound).
        initialize_mode: "ok", "silent" (never answers) or "malformed".
        hold_symbols_for: uris whose documentSymbol replies wait for release_held().
    """

    def __init__(self) -> None:
        self.docs: dict[str, str] = {}
        self.versions: dict[str, int] = {}
        self.received: list[Message] = []
        self.initialize_count = 0
        self.apply_edit_mode = "accept"
        self.initialize_mode = "ok"
        self.fail_methods: set[str] = set()
        self.hold_symbols_for: set[str] = set()
        self.held: list[Message] = []
        self.transport: InMemoryTransport | None = None
        self._lock = threading.Lock()

    # -- wiring ---------------------------------------------------------

    def transport_factory(
        self, config: LanguageServerConfig, root: str, settings: ClientSettings
    ) -> InMemoryTransport:
        """A fresh 'process': documents from any previous session are gone."""
        with self._lock:
            self.docs.clear()
            self.versions.clear()
        self.transport = InMemoryTransport(self.handle, name=config.language)
        return self.transport

    def methods(self) -> list[str]:
        return [m["method"] for m in self.received if "method" in m]

    def notifications(self, method: str) -> list[dict[str, Any]]:
        return [m.get("params") for m in self.received if m.get("method") == method and "id" not in m]

    # -- protocol -------------------------------------------------------

    def handle(self, message: Message) -> list[Message]:
        with self._lock:
            self.received.append(message)
            method = message.get("method")
            if method is None:
                # client's reply to a server request
                return []
            if "id" not in message:
                return self._notification(method, message.get("params") or {})
            if method in self.fail_methods:
                return [self._error(message["id"], -32603, f"{method} failed")]
            params = message.get("params") or {}
            replies = self._request(message["id"], method, params)
            if method == "textDocument/documentSymbol" and params["textDocument"]["uri"] in self.hold_symbols_for:
                self.held.extend(replies)
                return []
            return replies

    def release_held(self) -> None:
        """Send the replies held back for ``hold_symbols_for`` documents."""
        with self._lock:
            held, self.held = self.held, []
        for reply in held:
            self.transport.push(reply)

    @staticmethod
    def _reply(request_id: int, result: Any) -> list[Message]:
        return [{"jsonrpc": "2.0", "id": request_id, "result": result}]

    @staticmethod
    def _error(request_id: int, code: int, text: str) -> Message:
        return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": text}}

    def _request(self, request_id: int, method: str, params: dict[str, Any]) -> list[Message]:
        if method == "initialize":
            self.initialize_count += 1
            if self.initialize_mode == "silent":
                return []
            if self.initialize_mode == "malformed":
                return self._reply(request_id, {"serverInfo": {"name": "fake"}})
            return self._reply(
                request_id,
                {
                    "capabilities": {
                        "textDocumentSync": 2,
                        "documentSymbolProvider": True,
                        "hoverProvider": True,
                        "renameProvider": True,
                    },
                    "serverInfo": {"name": "fake-ls", "version": "1.0"},
                },
            )
        if method == "shutdown":
            return self._reply(request_id, None)
        if method == "textDocument/documentSymbol":
            return self._reply(request_id, outline(self.docs.get(params["textDocument"]["uri"], "")))
        if method == "textDocument/hover":
            word = self._word_at(params)
            return self._reply(request_id, {"contents": {"kind": "markdown", "value": f"(symbol) {word}"}} if word else None)
        if method == "textDocument/completion":
            names = sorted({s["name"] for s in self._all_symbols(params["textDocument"]["uri"])})
            return self._reply(request_id, {"isIncomplete": False, "items": [{"label": n, "kind": 3} for n in names]})
        if method == "textDocument/references":
            word = self._word_at(params)
            return self._reply(request_id, [{"uri": uri, "range": rng} for uri, rng in self._occurrences(word)])
        if method == "textDocument/definition":
            word = self._word_at(params)
            for uri in self.docs:
                for symbol in self._all_symbols(uri):
                    if symbol["name"] == word:
                        return self._reply(request_id, {"uri": uri, "range": symbol["selectionRange"]})
            return self._reply(request_id, None)
        if method == "textDocument/rename":
            word = self._word_at(params)
            by_uri: dict[str, list[dict[str, Any]]] = {}
            for uri, rng in self._occurrences(word):
                by_uri.setdefault(uri, []).append({"range": rng, "newText": params["newName"]})
            return self._reply(
                request_id,
                {
                    "documentChanges": [
                        {"textDocument": {"uri": uri, "version": self.versions.get(uri)}, "edits": edits}
                        for uri, edits in by_uri.items()
                    ]
                },
            )
        if method == "workspace/applyEdit":
            if self.apply_edit_mode == "missing":
                return [self._error(request_id, -32601, "Unhandled method workspace/applyEdit")]
            if self.apply_edit_mode == "reject":
                return self._reply(request_id, {"applied": False, "failureReason": "document is read-only"})
            for uri, edits in params["edit"]["changes"].items():
                ordered = sorted(
                    enumerate(edits),
                    key=lambda item: (item[1]["range"]["start"]["line"], item[1]["range"]["start"]["character"], item[0]),
                    reverse=True,
                )
                for _, edit in ordered:
                    self.docs[uri] = _splice(self.docs[uri], edit["range"], edit["newText"])
                self.versions[uri] = self.versions.get(uri, 0) + 1
            return self._reply(request_id, {"applied": True})
        return [self._error(request_id, -32601, f"Unhandled method {method}")]

    def _notification(self, method: str, params: dict[str, Any]) -> list[Message]:
        if method == "textDocument/didOpen":
            item = params["textDocument"]
            self.docs[item["uri"]] = item["text"]
            self.versions[item["uri"]] = item["version"]
            return [self._diagnostics(item["uri"])]
        if method == "textDocument/didChange":
            uri = params["textDocument"]["uri"]
            for change in params["contentChanges"]:
                if "range" in change:
                    self.docs[uri] = _splice(self.docs[uri], change["range"], change["text"])
                else:
                    self.docs[uri] = change["text"]
            self.versions[uri] = params["textDocument"]["version"]
            return [self._diagnostics(uri)]
        if method == "textDocument/didClose":
            self.docs.pop(params["textDocument"]["uri"], None)
        return []

    def _diagnostics(self, uri: str) -> Message:
        diagnostics = []
        for i, line in enumerate(self.docs.get(uri, "").split("\n")):
            col = line.find("FIXME")
            if col >= 0:
                diagnostics.append(
                    {
                        "range": {"start": {"line": i, "character": col}, "end": {"line": i, "character": col + 5}},
                        "message": "unresolved FIXME",
                        "severity": 2,
                        "source": "fake-ls",
                    }
                )
        return {
            "jsonrpc": "2.0",
            "method": "textDocument/publishDiagnostics",
            "params": {"uri": uri, "diagnostics": diagnostics},
        }

    # -- helpers --------------------------------------------------------

    def _all_symbols(self, uri: str) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []

        def walk(items: list[dict[str, Any]]) -> None:
            for item in items:
                result.append(item)
                walk(item.get("children", []))

        walk(outline(self.docs.get(uri, "")))
        return result

    def _word_at(self, params: dict[str, Any]) -> str | None:
        text = self.docs.get(params["textDocument"]["uri"], "")
        lines = text.split("\n")
        pos = params["position"]
        if pos["line"] >= len(lines):
            return None
        for m in re.finditer(r"\w+", lines[pos["line"]]):
            if m.start() <= pos["character"] <= m.end():
                return m.group(0)
        return None

    def _occurrences(self, word: str | None) -> list[tuple[str, dict[str, Any]]]:
        if not word:
            return []
        found = []
        pattern = re.compile(rf"\b{re.escape(word)}\b")
        for uri, text in self.docs.items():
            for i, line in enumerate(text.split("\n")):
                for m in pattern.finditer(line):
                    found.append(
                        (uri, {"start": {"line": i, "character": m.start()}, "end": {"line": i, "character": m.end()}})
                    )
        return found


# =============================================================================
# Manual clock
# =============================================================================


class _ManualCall(ScheduledCall):
    def __init__(self, due: float, callback: Callable[[], None], interval: float | None) -> None:
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock that only moves on advance(); callbacks run on the caller's thread."""

    def __init__(self, start: float = 1000.0) -> None:
        self._now = start
        self._calls: list[_ManualCall] = []
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> ScheduledCall:
        call = _ManualCall(self._now + delay, callback, None)
        with self._lock:
            self._calls.append(call)
        return call

    def call_every(self, interval: float, callback: Callable[[], None]) -> ScheduledCall:
        call = _ManualCall(self._now + interval, callback, interval)
        with self._lock:
            self._calls.append(call)
        return call

    @property
    def pending_one_shots(self) -> int:
        with self._lock:
            return sum(1 for c in self._calls if c.interval is None and not c.cancelled)

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            with self._lock:
                self._calls = [c for c in self._calls if not c.cancelled]
                due = [c for c in self._calls if c.due <= target]
                if not due:
                    break
                call = min(due, key=lambda c: c.due)
                self._now = max(self._now, call.due)
                if call.interval is None:
                    call.cancelled = True
                else:
                    call.due += call.interval
            call.callback()
        self._now = target


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def python_config() -> LanguageServerConfig:
    return LanguageServerConfig(language="python", command="fake-ls", extensions=[".py"])


@pytest.fixture
def settings(python_config) -> ClientSettings:
    """Short timeouts; supervision intervals at their defaults."""
    return ClientSettings(
        request_timeout=2.0,
        handshake_timeout=0.3,
        shutdown_timeout=0.5,
        servers={"python": python_config},
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_server() -> FakeLanguageServer:
    return FakeLanguageServer()


@pytest.fixture
def workspace(tmp_path):
    """A workspace root with two Python files."""
    (tmp_path / "calc.py").write_text(SAMPLE_PY)
    (tmp_path / "helpers.py").write_text(HELPERS_PY)
    return tmp_path


@pytest.fixture
def client(workspace, python_config, settings, clock, fake_server):
    """An initialized client talking to the fake server."""
    c = LanguageServerClient(
        python_config,
        str(workspace),
        settings=settings,
        clock=clock,
        transport_factory=fake_server.transport_factory,
    )
    c.initialize()
    yield c
    c.shutdown()


@pytest.fixture
def context(workspace, settings, clock, fake_server):
    ctx = WorkspaceContext(
        str(workspace),
        settings=settings,
        clock=clock,
        transport_factory=fake_server.transport_factory,
    )
    yield ctx
    ctx.cleanup()


@pytest.fixture
def service(context):
    return context.get_edit_service()
