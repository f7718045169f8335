"""Workspace context: every service and server scoped to one root.

Callers create a ``WorkspaceContext`` per workspace root and own it; there
are no module-level registries. Services are lazily initialized on first
access, and ``cleanup()`` shuts every language server of the workspace
down.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from tomos.constants import utcnow
from tomos.utils.logger import logger

if TYPE_CHECKING:
    from tomos.lsp.client import TransportFactory
    from tomos.lsp.clock import Clock
    from tomos.lsp.manager import LspManager
    from tomos.lsp.settings import ClientSettings
    from tomos.services.edit_service import SurgicalEditService


@dataclass
class WorkspaceContext:
    """All services and state scoped to a single workspace root.

    ``settings``, ``clock`` and ``transport_factory`` are handed to the
    LspManager when it is first created; leave them unset to load
    settings from the workspace and spawn real servers.
    """

    path: str
    settings: Optional["ClientSettings"] = None
    clock: Optional["Clock"] = field(default=None, repr=False)
    transport_factory: Optional["TransportFactory"] = field(default=None, repr=False)
    activated_at: datetime = field(default_factory=utcnow)
    _lsp_manager: Optional["LspManager"] = field(default=None, repr=False)
    _edit_service: Optional["SurgicalEditService"] = field(default=None, repr=False)
    _init_lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        self.path = str(Path(self.path).resolve())

    @property
    def name(self) -> str:
        """Short workspace name (directory basename)."""
        return Path(self.path).name

    def get_lsp_manager(self) -> "LspManager":
        """Get or create the LSP manager for this workspace."""
        if self._lsp_manager is not None:
            return self._lsp_manager
        with self._init_lock:
            if self._lsp_manager is None:
                from tomos.lsp.manager import LspManager
                from tomos.lsp.settings import ClientSettings

                if self.settings is None:
                    self.settings = ClientSettings.load(self.path)
                self._lsp_manager = LspManager(
                    self.path,
                    settings=self.settings,
                    clock=self.clock,
                    transport_factory=self.transport_factory,
                )
            return self._lsp_manager

    def get_edit_service(self) -> "SurgicalEditService":
        """Get or create the surgical edit service for this workspace."""
        if self._edit_service is not None:
            return self._edit_service
        with self._init_lock:
            if self._edit_service is None:
                from tomos.services.edit_service import SurgicalEditService

                self._edit_service = SurgicalEditService(self.path, self.get_lsp_manager())
            return self._edit_service

    def shutdown_lsp(self) -> None:
        """Stop every language server of this workspace."""
        with self._init_lock:
            manager = self._lsp_manager
        if manager is not None:
            manager.stop_all()

    def cleanup(self) -> None:
        """Release all resources held by this workspace context."""
        try:
            self.shutdown_lsp()
        except Exception:
            logger.opt(exception=True).warning(f"Error shutting down LSP for {self.path}")
        with self._init_lock:
            self._edit_service = None
            self._lsp_manager = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict for status output."""
        lsp_status = self._lsp_manager.get_status() if self._lsp_manager is not None else None
        return {
            "path": self.path,
            "name": self.name,
            "activated_at": self.activated_at.isoformat(),
            "lsp": lsp_status,
        }

    def __enter__(self) -> "WorkspaceContext":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cleanup()
