"""Shared constants and helpers for Tomos.

Centralizes protocol timeouts, supervision intervals and timezone-aware
datetime helpers.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime.

    Replacement for the deprecated ``datetime.utcnow()`` which returns a naive
    datetime.  This returns ``datetime.now(timezone.utc)`` and can be used
    directly as a ``default_factory`` in dataclass fields.
    """
    return datetime.now(timezone.utc)


# Per-request deadline for anything sent to a language server (seconds).
DEFAULT_REQUEST_TIMEOUT: float = 30.0

# Deadline for the initialize handshake (seconds).
DEFAULT_HANDSHAKE_TIMEOUT: float = 30.0

# No protocol activity for this long marks a server as degraded (seconds).
DEFAULT_HEARTBEAT_TIMEOUT: float = 120.0

# Period of the health monitor tick (seconds).
DEFAULT_HEALTH_CHECK_INTERVAL: float = 30.0

# Fixed delay between tearing a crashed server down and starting it again.
DEFAULT_RESTART_BACKOFF: float = 2.0

# Grace period for a language server to exit after shutdown/exit.
DEFAULT_SHUTDOWN_TIMEOUT: float = 5.0

# Per-workspace configuration directory and file.
CONFIG_DIR_NAME: str = ".tomos"
CONFIG_FILE_NAME: str = "config.json"

# Prefix for environment variable overrides (e.g. TOMOS_REQUEST_TIMEOUT).
ENV_PREFIX: str = "TOMOS_"
