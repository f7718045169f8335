"""Tests for the JSON-RPC connection: correlation, timeouts, routing."""

import threading

import pytest

from tests.conftest import wait_until
from tomos.lsp.connection import Connection
from tomos.lsp.transport import InMemoryTransport
from tomos.types.errors import ConnectionClosedError, ProtocolError, RequestTimeoutError


def echo_handler(message):
    if "method" in message and "id" in message:
        return [{"jsonrpc": "2.0", "id": message["id"], "result": {"echo": message["method"]}}]
    return []


@pytest.fixture
def transport():
    return InMemoryTransport(echo_handler)


@pytest.fixture
def connection(transport):
    conn = Connection(transport)
    conn.start()
    yield conn
    conn.close()


class TestRequests:
    """Tests for request/response correlation."""

    def test_request_returns_result(self, connection):
        assert connection.send_request("ping") == {"echo": "ping"}
        assert connection.pending_count == 0

    def test_ids_increase(self, connection, transport):
        connection.send_request("a")
        connection.send_request("b")
        ids = [m["id"] for m in transport.sent]
        assert ids == sorted(ids)
        assert len(set(ids)) == 2

    def test_error_response_raises_protocol_error(self):
        """An error object becomes ProtocolError with the JSON-RPC code."""
        transport = InMemoryTransport(
            lambda m: [{"jsonrpc": "2.0", "id": m["id"], "error": {"code": -32601, "message": "nope"}}]
        )
        conn = Connection(transport)
        conn.start()
        try:
            with pytest.raises(ProtocolError) as exc_info:
                conn.send_request("missing/method")
            assert exc_info.value.rpc_code == -32601
            assert exc_info.value.is_method_not_found
        finally:
            conn.close()

    def test_timeout_clears_pending(self):
        """A request nobody answers times out and leaves no pending entry."""
        conn = Connection(InMemoryTransport(lambda m: []))
        conn.start()
        try:
            with pytest.raises(RequestTimeoutError, match="slow"):
                conn.send_request("slow", timeout=0.05)
            assert conn.pending_count == 0
        finally:
            conn.close()

    def test_out_of_order_responses(self):
        """Responses are matched by id, not by arrival order."""
        transport = InMemoryTransport(lambda m: [])
        conn = Connection(transport)
        conn.start()
        results = {}

        def call(name):
            results[name] = conn.send_request(name, timeout=5)

        threads = [threading.Thread(target=call, args=(n,)) for n in ("first", "second")]
        for t in threads:
            t.start()
        assert wait_until(lambda: len(transport.sent) == 2)
        for message in reversed(transport.sent):
            transport.push({"jsonrpc": "2.0", "id": message["id"], "result": message["method"].upper()})
        for t in threads:
            t.join(timeout=5)
        conn.close()
        assert results == {"first": "FIRST", "second": "SECOND"}

    def test_late_response_ignored(self, transport):
        """A response for an unknown id is dropped without error."""
        conn = Connection(transport)
        conn.start()
        transport.push({"jsonrpc": "2.0", "id": 999, "result": None})
        assert conn.send_request("still/works") == {"echo": "still/works"}
        conn.close()


class TestInbound:
    """Tests for notifications and server-initiated requests."""

    def test_notifications_routed(self, transport):
        received = []
        conn = Connection(transport, notification_handler=lambda method, params: received.append((method, params)))
        conn.start()
        transport.push({"jsonrpc": "2.0", "method": "window/logMessage", "params": {"message": "hi"}})
        assert wait_until(lambda: received)
        assert received == [("window/logMessage", {"message": "hi"})]
        conn.close()

    def test_server_request_answered(self, transport):
        """Server requests get a reply carrying the handler's result."""
        conn = Connection(transport, request_handler=lambda method, params: [None] * len(params["items"]))
        conn.start()
        transport.push({"jsonrpc": "2.0", "id": "s1", "method": "workspace/configuration", "params": {"items": [{}, {}]}})
        assert wait_until(lambda: any(m.get("id") == "s1" for m in transport.sent))
        reply = next(m for m in transport.sent if m.get("id") == "s1")
        assert reply["result"] == [None, None]
        conn.close()

    def test_server_request_handler_error(self, transport):
        """A failing handler produces an error reply instead of crashing the dispatcher."""

        def broken(method, params):
            raise RuntimeError("boom")

        conn = Connection(transport, request_handler=broken)
        conn.start()
        transport.push({"jsonrpc": "2.0", "id": 5, "method": "client/registerCapability"})
        assert wait_until(lambda: any("error" in m for m in transport.sent))
        reply = next(m for m in transport.sent if "error" in m)
        assert reply["error"]["code"] == -32603
        assert conn.send_request("alive") == {"echo": "alive"}
        conn.close()


class TestClose:
    """Tests for transport close handling."""

    def test_exit_fails_pending_and_notifies(self):
        transport = InMemoryTransport(lambda m: [])
        events = []
        conn = Connection(transport, close_handler=events.append)
        conn.start()
        errors = []

        def call():
            try:
                conn.send_request("never", timeout=5)
            except ConnectionClosedError as e:
                errors.append(e)

        t = threading.Thread(target=call)
        t.start()
        assert wait_until(lambda: transport.sent)
        transport.simulate_exit(exit_code=1)
        t.join(timeout=5)
        assert len(errors) == 1
        assert wait_until(lambda: events)
        assert events[0].exit_code == 1
        assert conn.is_closed

    def test_intentional_close_skips_handler(self, transport):
        events = []
        conn = Connection(transport, close_handler=events.append)
        conn.start()
        conn.close()
        assert events == []
        with pytest.raises(ConnectionClosedError):
            conn.send_request("after/close")
