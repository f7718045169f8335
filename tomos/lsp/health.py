"""Health monitoring and supervised restart.

The monitor combines two signals into the client's health state:

- process exit/error events, delivered by the connection's close handler,
  which mark the client degraded and trigger exactly one restart;
- heartbeat staleness, checked on a periodic tick, which only marks the
  client degraded. The next successful exchange restores it.
"""

from __future__ import annotations

import logging

from tomos.lsp.client import LanguageServerClient
from tomos.lsp.clock import Clock, ScheduledCall
from tomos.types.core import ServerState

log = logging.getLogger(__name__)


class HealthMonitor:
    """Periodic supervisor for one language server client."""

    def __init__(self, client: LanguageServerClient, clock: Clock | None = None, interval: float | None = None) -> None:
        self.client = client
        self.clock = clock or client.clock
        self.interval = interval or client.settings.health_check_interval
        self._tick_call: ScheduledCall | None = None
        self._subscribed = False

    @property
    def is_running(self) -> bool:
        return self._tick_call is not None

    def start(self) -> None:
        if self._tick_call is not None:
            return
        if not self._subscribed:
            self.client.add_exit_listener(self._on_exit)
            self._subscribed = True
        self._tick_call = self.clock.call_every(self.interval, self.tick)
        log.debug("Health monitor started for %s (every %ss)", self.client.language, self.interval)

    def stop(self) -> None:
        if self._tick_call is not None:
            self._tick_call.cancel()
            self._tick_call = None

    def _on_exit(self, client: LanguageServerClient) -> None:
        if self._tick_call is None:
            return
        client.request_restart()

    def tick(self) -> None:
        """One health check: restart after an exit, degrade when stale."""
        client = self.client
        state = client.state
        if state in (ServerState.SHUT_DOWN, ServerState.UNINITIALIZED):
            return
        if client.restart_in_progress:
            return
        if client.restart_needed:
            client.request_restart()
            return
        if state is ServerState.READY and client.is_stale():
            idle = self.clock.now() - client.last_activity
            client.mark_degraded(f"no activity for {idle:.0f}s")
