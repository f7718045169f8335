"""Service layer for high-level operations coordination."""

from tomos.services.edit_service import SurgicalEditService
from tomos.services.workspace_context import WorkspaceContext

__all__ = [
    "SurgicalEditService",
    "WorkspaceContext",
]
