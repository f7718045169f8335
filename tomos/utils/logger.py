"""
Logging utility for Tomos services.

Language servers own the child process's STDIN/STDOUT, and the CLI prints
JSON results on STDOUT, so all log output goes to STDERR.

Two loggers coexist:
- ``tomos.lsp`` modules use stdlib ``logging`` (one logger per module)
- services, contexts and the CLI use the loguru ``logger`` exported here

``configure_logging()`` sets both up with the same level.

Correlation IDs:
- Each batch edit runs inside ``with_correlation_id()``; loguru records
  emitted in the block carry ``correlation_id`` and ``operation`` in their
  ``extra`` dict
- The scope lives in a ContextVar, so nested service calls see it
"""

import logging
import os
import secrets
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Generator, TextIO

from loguru import logger as loguru_logger

LOG_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "{extra[correlation_id]} | <cyan>{name}</cyan> - <level>{message}</level>"
)
STDLIB_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s"

# records logged outside any scope
loguru_logger.configure(extra={"correlation_id": "-", "operation": None})


# ============================================================================
# Correlation scope
# ============================================================================


@dataclass
class LogScope:
    """One correlation scope (for example, one batch of edits)."""

    correlation_id: str
    operation: str | None = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed(self) -> float:
        """Seconds since the scope was entered."""
        return time.monotonic() - self.started_at


_current_scope: ContextVar[LogScope | None] = ContextVar("tomos_log_scope", default=None)


def new_correlation_id(prefix: str = "req") -> str:
    """A short unique id such as ``batch_3f9a1c2e7b4d``."""
    return f"{prefix}_{secrets.token_hex(6)}"


def current_scope() -> LogScope | None:
    return _current_scope.get()


def get_correlation_id() -> str | None:
    """Correlation ID of the enclosing scope, if any."""
    scope = _current_scope.get()
    return scope.correlation_id if scope else None


@contextmanager
def with_correlation_id(
    correlation_id: str | None = None,
    operation: str | None = None,
) -> Generator[LogScope, None, None]:
    """
    Run a block under a correlation ID.

    Args:
        correlation_id: ID to use; a new one is generated when omitted
        operation: Name of the operation, added to every record

    Yields:
        The active LogScope
    """
    scope = LogScope(correlation_id=correlation_id or new_correlation_id(operation or "req"), operation=operation)
    token = _current_scope.set(scope)
    try:
        with loguru_logger.contextualize(correlation_id=scope.correlation_id, operation=operation):
            yield scope
    finally:
        _current_scope.reset(token)


# ============================================================================
# Logger Configuration
# ============================================================================


def is_debug_enabled() -> bool:
    """Check if debug mode is enabled (``TOMOS_DEBUG=true``)."""
    return os.environ.get("TOMOS_DEBUG", "").lower() == "true"


def configure_logging(verbose: bool = False, sink: TextIO | None = None) -> str:
    """
    Route loguru and stdlib logging to one stream at one level.

    Args:
        verbose: Log at DEBUG instead of WARNING
        sink: Stream to write to (default: the current ``sys.stderr``)

    Returns:
        The level name in effect
    """
    level = "DEBUG" if verbose or is_debug_enabled() else "WARNING"
    stream = sink if sink is not None else sys.stderr
    loguru_logger.remove()
    loguru_logger.add(stream, level=level, format=LOG_FORMAT, colorize=False)
    logging.basicConfig(stream=stream, level=getattr(logging, level), format=STDLIB_FORMAT)
    logging.getLogger("tomos").setLevel(getattr(logging, level))
    return level


# Export loguru logger for direct use
logger = loguru_logger
