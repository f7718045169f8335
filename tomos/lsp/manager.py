"""LSP server lifecycle management.

Manages one language server client per language for a workspace root,
routing files to the correct server based on extension and starting
servers lazily on first use.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

from tomos.lsp.client import LanguageServerClient, TransportFactory
from tomos.lsp.clock import Clock, SystemClock
from tomos.lsp.health import HealthMonitor
from tomos.lsp.settings import ClientSettings
from tomos.lsp.utils import uri_to_path
from tomos.types.core import HealthState
from tomos.types.errors import TomosError, UnsupportedLanguageError

log = logging.getLogger(__name__)


class LspManager:
    """Manages language server clients for one workspace root.

    Each workspace gets its own LspManager, which lazily starts language
    servers on first use (with a health monitor each) and shuts them down
    when the workspace is closed.
    """

    def __init__(
        self,
        root: str,
        settings: ClientSettings | None = None,
        clock: Clock | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self._root = os.path.abspath(root)
        self._settings = settings or ClientSettings.load(self._root)
        self._clock = clock or SystemClock()
        self._transport_factory = transport_factory
        self._clients: dict[str, LanguageServerClient] = {}
        self._monitors: dict[str, HealthMonitor] = {}
        self._lock = threading.RLock()

    @property
    def root(self) -> str:
        return self._root

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    def get_language_for_file(self, uri_or_path: str) -> str | None:
        """Determine the language for a file based on its extension."""
        return self._settings.language_for_filename(uri_to_path(uri_or_path))

    def get_client_for_uri(self, uri: str) -> LanguageServerClient:
        """Get a running client for the given document, starting it if needed.

        Raises:
            UnsupportedLanguageError: No server is configured for the file.
        """
        language = self.get_language_for_file(uri)
        if language is None:
            raise UnsupportedLanguageError(os.path.splitext(uri_to_path(uri))[1] or uri)
        return self.get_client(language)

    def get_client(self, language: str) -> LanguageServerClient:
        """Get a running client for a language, starting it if needed.

        Raises:
            UnsupportedLanguageError: The language has no server config.
            BinaryNotFoundError / ProcessSpawnError / HandshakeError: Startup failed.
        """
        with self._lock:
            client = self._clients.get(language)
            if client is not None:
                return client

            config = self._settings.get_server_config(language)
            if config is None:
                raise UnsupportedLanguageError(language)

            client = LanguageServerClient(
                config,
                self._root,
                settings=self._settings,
                clock=self._clock,
                transport_factory=self._transport_factory,
            )
            client.initialize()
            monitor = HealthMonitor(client, clock=self._clock)
            monitor.start()
            self._clients[language] = client
            self._monitors[language] = monitor
            log.info("Started %s language server for workspace %s", language, os.path.basename(self._root))
            return client

    def is_available(self, language: str) -> bool:
        """Check if a language has a configured server."""
        return self._settings.get_server_config(language) is not None

    def is_running(self, language: str) -> bool:
        with self._lock:
            return language in self._clients

    def start(self, language: str) -> bool:
        """Start a language server for the given language.

        Returns:
            True if the server is running after the call.
        """
        try:
            self.get_client(language)
            return True
        except TomosError as e:
            log.error("Failed to start %s language server: %s", language, e.message)
            return False

    def stop(self, language: str) -> None:
        """Stop a running language server."""
        with self._lock:
            client = self._clients.pop(language, None)
            monitor = self._monitors.pop(language, None)
        if monitor is not None:
            monitor.stop()
        if client is not None:
            client.shutdown()
            log.info("Stopped %s language server", language)

    def stop_all(self) -> None:
        """Stop all running language servers."""
        with self._lock:
            languages = list(self._clients)
        for language in languages:
            self.stop(language)

    def get_health(self) -> dict[str, HealthState]:
        with self._lock:
            return {language: client.get_health() for language, client in self._clients.items()}

    def get_status(self) -> dict[str, Any]:
        """Get status of all language servers."""
        with self._lock:
            clients = dict(self._clients)
        return {
            "root": self._root,
            "configured_languages": sorted(self._settings.servers),
            "running_servers": {
                language: {
                    "command": client.config.command,
                    "open_documents": len(client.documents),
                    **client.get_health().to_dict(),
                }
                for language, client in clients.items()
            },
        }
