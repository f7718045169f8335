"""
Tomos utility modules.

This package provides shared utilities used across the Tomos codebase:
- Logging (loguru with correlation IDs)
- Security (command validation, path containment)
"""

# Logger
from .logger import (
    LogScope,
    configure_logging,
    current_scope,
    get_correlation_id,
    is_debug_enabled,
    logger,
    new_correlation_id,
    with_correlation_id,
)

# Security
from .security import (
    find_shell_metacharacters,
    has_shell_metacharacters,
    is_absolute_command,
    is_within_root,
    validate_positive_number,
)

__all__ = [
    # Logger
    "LogScope",
    "configure_logging",
    "current_scope",
    "get_correlation_id",
    "is_debug_enabled",
    "logger",
    "new_correlation_id",
    "with_correlation_id",
    # Security
    "find_shell_metacharacters",
    "has_shell_metacharacters",
    "is_absolute_command",
    "is_within_root",
    "validate_positive_number",
]
