"""
Security utilities for Tomos.

Provides command validation for language server binaries, path containment
for files touched by the edit engine, and small input validators used by
the settings loader.
"""

import os
import re

# ============================================================================
# Command Validation
# ============================================================================


# Characters that only mean something to a shell. Commands are never run
# through a shell, so their presence in a configured binary is suspicious.
SHELL_METACHARACTERS = frozenset(";&|$`<>(){}*?!\n\r\x00")

_WINDOWS_ABSOLUTE = re.compile(r"^[A-Za-z]:[\\/]")


def find_shell_metacharacters(value: str) -> list[str]:
    """
    Return the shell metacharacters present in a string, in order of appearance.

    Args:
        value: String to inspect

    Returns:
        Unique metacharacters found (empty if the string is clean)
    """
    found: list[str] = []
    for ch in value:
        if ch in SHELL_METACHARACTERS and ch not in found:
            found.append(ch)
    return found


def has_shell_metacharacters(value: str) -> bool:
    """Check if a string contains any shell metacharacter."""
    return bool(find_shell_metacharacters(value))


def is_absolute_command(command: str) -> bool:
    """Check if a command is an absolute path (POSIX or Windows drive form)."""
    return os.path.isabs(command) or bool(_WINDOWS_ABSOLUTE.match(command))


# ============================================================================
# Path Containment
# ============================================================================


def is_within_root(path: str, root: str) -> bool:
    """
    Check if a path resolves inside root, following symlinks.

    Root prefix must match on a directory boundary, so ``/a/project`` does
    not contain ``/a/project-evil``.
    """
    abs_path = os.path.realpath(path)
    root_real = os.path.realpath(root)
    return abs_path == root_real or abs_path.startswith(root_real + os.sep)


# ============================================================================
# Input Validation
# ============================================================================


def validate_positive_number(
    value: float,
    name: str,
    allow_zero: bool = False,
) -> None:
    """
    Validate that a value is a positive number.

    Args:
        value: Value to validate
        name: Parameter name for error messages
        allow_zero: Whether zero is allowed

    Raises:
        ValueError: If value is invalid
    """
    if allow_zero:
        if value < 0:
            raise ValueError(f"{name} must be non-negative")
    else:
        if value <= 0:
            raise ValueError(f"{name} must be positive")
