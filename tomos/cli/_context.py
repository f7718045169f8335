"""CLI workspace context -- every command runs inside one WorkspaceContext.

All CLI commands that need services should use cli_workspace_scope(path)
instead of instantiating services directly. This provides:
- Lazy service and language server startup
- Proper language server shutdown on command exit
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from pathlib import Path

from tomos.services.workspace_context import WorkspaceContext
from tomos.utils.logger import logger


def create_workspace_context(path: str) -> WorkspaceContext:
    """Create the context for a CLI command's workspace root."""
    return WorkspaceContext(str(Path(path).resolve()))


@contextlib.contextmanager
def cli_workspace_scope(path: str) -> Generator[WorkspaceContext, None, None]:
    """Context manager providing a WorkspaceContext with cleanup on exit."""
    ctx = create_workspace_context(path)
    try:
        yield ctx
    finally:
        try:
            ctx.cleanup()
        except Exception:
            logger.opt(exception=True).debug("Error during CLI context cleanup")
