"""Language server binary resolution.

Turns a configured command into an absolute executable path without ever
involving a shell: absolute paths are checked on the filesystem, bare names
are looked up on PATH.
"""

from __future__ import annotations

import logging
import os
import shutil

from tomos.types.errors import BinaryNotFoundError, ErrorContext, SecurityViolationError
from tomos.utils.security import find_shell_metacharacters, is_absolute_command

log = logging.getLogger(__name__)


def resolve_binary(command: str, language: str | None = None) -> str:
    """Resolve a configured command to an executable path.

    Args:
        command: Executable name (looked up on PATH) or absolute path.
        language: Language name, for error context only.

    Returns:
        Absolute path of the executable.

    Raises:
        SecurityViolationError: If the command contains shell metacharacters.
        BinaryNotFoundError: If the executable cannot be located.
    """
    context = ErrorContext(operation="resolve_binary", language=language, component="binary")

    bad_chars = find_shell_metacharacters(command)
    if bad_chars:
        raise SecurityViolationError(
            f"Refusing language server command {command!r}: contains shell metacharacters {bad_chars}",
            context=context,
        )

    if is_absolute_command(command):
        if os.path.isfile(command) and os.access(command, os.X_OK):
            return command
        raise BinaryNotFoundError(command, context=context)

    resolved = shutil.which(command)
    if not resolved:
        raise BinaryNotFoundError(command, context=context)

    log.debug("Resolved %s to %s", command, resolved)
    return resolved


def is_binary_available(command: str) -> bool:
    """Check if a command resolves, without raising."""
    try:
        resolve_binary(command)
        return True
    except (BinaryNotFoundError, SecurityViolationError):
        return False
