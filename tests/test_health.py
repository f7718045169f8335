"""Tests for health supervision: exit-triggered restart, staleness, replay.

Time never passes on its own here: the ManualClock drives both the
periodic health tick and the restart backoff.
"""

from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from tests.conftest import SAMPLE_PY, wait_until
from tomos.lsp.health import HealthMonitor
from tomos.lsp.utils import path_to_uri
from tomos.types.core import ContentChange, ServerState
from tomos.types.errors import RestartInProgressError


@pytest.fixture
def monitor(client, clock):
    m = HealthMonitor(client, clock=clock)
    m.start()
    yield m
    m.stop()


@pytest.fixture
def calc_uri(workspace):
    return path_to_uri(str(workspace / "calc.py"))


def crash(fake_server, client, clock, exit_code=1):
    fake_server.transport.simulate_exit(exit_code=exit_code)
    assert wait_until(lambda: client.state is ServerState.RESTARTING and clock.pending_one_shots == 1)


class TestExitRestart:
    """Tests for restart after a process exit."""

    def test_exit_restarts_once_and_replays(self, client, monitor, clock, fake_server, calc_uri):
        """Exit -> exactly one restart; open documents come back at version 1."""
        client.open_document(calc_uri, SAMPLE_PY)
        client.change_document(calc_uri, [ContentChange(text=SAMPLE_PY + "\n# edited\n")])

        crash(fake_server, client, clock, exit_code=137)
        health = client.get_health()
        assert health.healthy is False
        assert health.restart_in_progress is True
        assert health.last_exit_code == 137

        clock.advance(2.0)

        assert client.state is ServerState.READY
        assert fake_server.initialize_count == 2
        reopened = fake_server.notifications("textDocument/didOpen")[-1]["textDocument"]
        assert reopened["version"] == 1
        assert reopened["text"].endswith("# edited\n")
        assert client.documents.require(calc_uri).version == 1

        # later ticks find nothing to do
        clock.advance(120.0)
        assert fake_server.initialize_count == 2
        health = client.get_health()
        assert health.healthy is True
        assert health.restart_count == 1

    def test_backoff_is_respected(self, client, monitor, clock, fake_server):
        """Nothing restarts before the backoff elapses."""
        crash(fake_server, client, clock)
        clock.advance(1.0)
        assert client.state is ServerState.RESTARTING
        assert fake_server.initialize_count == 1
        clock.advance(1.0)
        assert client.state is ServerState.READY

    def test_calls_during_restart_rejected(self, client, monitor, clock, fake_server, calc_uri):
        crash(fake_server, client, clock)
        with pytest.raises(RestartInProgressError):
            client.open_document(calc_uri, SAMPLE_PY)

    def test_concurrent_triggers_coalesce(self, client, monitor, clock, fake_server):
        """A second trigger while restarting is a no-op."""
        crash(fake_server, client, clock)
        assert client.request_restart() is False
        monitor.tick()
        assert clock.pending_one_shots == 1
        clock.advance(2.0)
        assert fake_server.initialize_count == 2
        assert client.get_health().restart_count == 1

    def test_failed_restart_retried_on_tick(self, client, monitor, clock, fake_server):
        """A restart whose handshake fails is retried by the next health tick."""
        crash(fake_server, client, clock)
        fake_server.initialize_mode = "malformed"
        clock.advance(2.0)
        assert client.state is ServerState.DEGRADED
        assert client.restart_needed

        fake_server.initialize_mode = "ok"
        clock.advance(30.0)  # tick -> request_restart
        clock.advance(2.0)  # backoff
        assert client.state is ServerState.READY
        assert not client.restart_needed

    def test_no_restart_after_shutdown(self, client, monitor, clock, fake_server):
        client.shutdown()
        clock.advance(300.0)
        assert client.state is ServerState.SHUT_DOWN
        assert fake_server.initialize_count == 1

    def test_exit_without_monitor_only_degrades(self, client, clock, fake_server):
        fake_server.transport.simulate_exit(exit_code=1)
        assert wait_until(lambda: client.state is ServerState.DEGRADED)
        clock.advance(10.0)
        assert client.state is ServerState.DEGRADED
        assert fake_server.initialize_count == 1


class TestStaleness:
    """Tests for heartbeat staleness."""

    def test_stale_degrades_without_restart(self, client, monitor, clock, fake_server):
        clock.advance(150.0)
        assert client.state is ServerState.DEGRADED
        assert client.get_health().healthy is False
        assert fake_server.initialize_count == 1
        assert not client.restart_in_progress

    def test_activity_restores_ready(self, client, monitor, clock, calc_uri):
        clock.advance(150.0)
        assert client.state is ServerState.DEGRADED
        client.open_document(calc_uri, SAMPLE_PY)
        assert client.state is ServerState.READY
        assert client.get_health().healthy is True

    def test_recent_activity_keeps_ready(self, client, monitor, clock, calc_uri):
        clock.advance(90.0)
        client.open_document(calc_uri, SAMPLE_PY)
        clock.advance(90.0)
        assert client.state is ServerState.READY

    def test_last_activity_wall_clock(self, client, calc_uri):
        """The reported wall-clock timestamp follows protocol activity."""
        with freeze_time("2026-03-01 12:00:00"):
            client.open_document(calc_uri, SAMPLE_PY)
            health = client.get_health()
        assert health.last_activity_at == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert health.to_dict()["last_activity_at"] == "2026-03-01T12:00:00+00:00"


class TestMonitorLifecycle:
    """Tests for HealthMonitor start/stop."""

    def test_start_is_idempotent(self, client, clock):
        monitor = HealthMonitor(client, clock=clock)
        monitor.start()
        monitor.start()
        assert monitor.is_running
        monitor.stop()
        assert not monitor.is_running

    def test_stopped_monitor_ignores_exit(self, client, clock, fake_server):
        monitor = HealthMonitor(client, clock=clock)
        monitor.start()
        monitor.stop()
        fake_server.transport.simulate_exit(exit_code=1)
        assert wait_until(lambda: client.state is ServerState.DEGRADED)
        assert not client.restart_in_progress
