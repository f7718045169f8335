"""
Structured error handling for Tomos.

Every failure a caller can observe is a ``TomosError`` subclass carrying a
stable string code, a severity and an ``ErrorContext``. Edit operations turn
these into ``EditResult`` objects instead of raising; the remaining public
operations raise them directly.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from tomos.constants import utcnow


class JsonRpcErrorCode(IntEnum):
    """JSON-RPC 2.0 / LSP error codes seen in server responses."""

    # Standard JSON-RPC 2.0 errors
    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # LSP-specific error codes
    SERVER_NOT_INITIALIZED = -32002
    UNKNOWN_ERROR_CODE = -32001
    REQUEST_FAILED = -32803
    SERVER_CANCELLED = -32802
    CONTENT_MODIFIED = -32801
    REQUEST_CANCELLED = -32800


class ErrorCode(str, Enum):
    """Stable error codes exposed to callers (also used in EditResult.error)."""

    # Process / supervision
    BINARY_NOT_FOUND = "BINARY_NOT_FOUND"
    PROCESS_SPAWN_FAILURE = "PROCESS_SPAWN_FAILURE"
    RESTART_IN_PROGRESS = "RESTART_IN_PROGRESS"
    SECURITY_VIOLATION = "SECURITY_VIOLATION"

    # Protocol session
    HANDSHAKE_FAILED = "HANDSHAKE_FAILED"
    HANDSHAKE_TIMEOUT = "HANDSHAKE_TIMEOUT"
    NOT_INITIALIZED = "NOT_INITIALIZED"
    REQUEST_TIMEOUT = "REQUEST_TIMEOUT"
    CONNECTION_CLOSED = "CONNECTION_CLOSED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"

    # Documents and edits
    DOCUMENT_NOT_OPEN = "DOCUMENT_NOT_OPEN"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    APPLY_EDIT_REJECTED = "APPLY_EDIT_REJECTED"
    MIRROR_DESYNC = "MIRROR_DESYNC"
    INVALID_OPERATION = "INVALID_OPERATION"
    FILE_ACCESS_ERROR = "FILE_ACCESS_ERROR"

    # Configuration
    INVALID_CONFIG = "INVALID_CONFIG"
    UNSUPPORTED_LANGUAGE = "UNSUPPORTED_LANGUAGE"

    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorSeverity(str, Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RecoveryAction:
    """Suggested action to recover from an error."""

    description: str
    command: str | None = None
    automated: bool = False


@dataclass
class ErrorContext:
    """Context information for an error."""

    operation: str | None = None
    uri: str | None = None
    language: str | None = None
    component: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    additional_info: dict[str, Any] = field(default_factory=dict)


class TomosError(Exception):
    """Base error class for Tomos."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    severity: ErrorSeverity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        context: ErrorContext | None = None,
        recovery_actions: list[RecoveryAction] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.recovery_actions = recovery_actions or []
        self.original_error = original_error
        self.context.timestamp = utcnow()

    def get_formatted_message(self) -> str:
        """Get a formatted error message for display to users."""
        parts = [
            f"[Error] {self.message}",
            f"   Code: {self.code.value}",
        ]

        if self.context.operation:
            parts.append(f"   Operation: {self.context.operation}")
        if self.context.uri:
            parts.append(f"   Document: {self.context.uri}")
        if self.context.language:
            parts.append(f"   Language: {self.context.language}")

        if self.recovery_actions:
            parts.append("")
            parts.append("Suggested actions:")
            for i, action in enumerate(self.recovery_actions, 1):
                parts.append(f"   {i}. {action.description}")
                if action.command:
                    parts.append(f"      Run: {action.command}")

        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "name": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "severity": self.severity.value,
            "context": {
                "operation": self.context.operation,
                "uri": self.context.uri,
                "language": self.context.language,
                "component": self.context.component,
                "timestamp": self.context.timestamp.isoformat(),
                "additional_info": self.context.additional_info,
            },
            "recovery_actions": [
                {"description": a.description, "command": a.command, "automated": a.automated}
                for a in self.recovery_actions
            ],
            "original_error": str(self.original_error) if self.original_error else None,
        }


# ---------------------------------------------------------------------------
# Process and supervision errors
# ---------------------------------------------------------------------------


class BinaryNotFoundError(TomosError):
    """The configured language server executable could not be located."""

    code = ErrorCode.BINARY_NOT_FOUND
    severity = ErrorSeverity.HIGH

    def __init__(self, command: str, context: ErrorContext | None = None) -> None:
        super().__init__(
            f"Language server binary '{command}' not found. Please install it first.",
            context=context,
            recovery_actions=[
                RecoveryAction(description=f"Install '{command}' or put it on PATH"),
                RecoveryAction(description="Point the server command at an absolute path in .tomos/config.json"),
            ],
        )
        self.command = command


class SecurityViolationError(TomosError):
    """A configured command or a file path tried to escape its sandbox."""

    code = ErrorCode.SECURITY_VIOLATION
    severity = ErrorSeverity.CRITICAL


class ProcessSpawnError(TomosError):
    """The operating system refused to start the language server process."""

    code = ErrorCode.PROCESS_SPAWN_FAILURE
    severity = ErrorSeverity.HIGH


class RestartInProgressError(TomosError):
    """A call reached a client while its server is being restarted."""

    code = ErrorCode.RESTART_IN_PROGRESS
    severity = ErrorSeverity.LOW


# ---------------------------------------------------------------------------
# Protocol session errors
# ---------------------------------------------------------------------------


class HandshakeError(TomosError):
    """The initialize handshake failed or returned a malformed response."""

    code = ErrorCode.HANDSHAKE_FAILED
    severity = ErrorSeverity.HIGH


class HandshakeTimeoutError(HandshakeError):
    """The server did not answer the initialize request in time."""

    code = ErrorCode.HANDSHAKE_TIMEOUT


class NotInitializedError(TomosError):
    """An operation was issued before initialize() completed."""

    code = ErrorCode.NOT_INITIALIZED


class RequestTimeoutError(TomosError):
    """A request did not receive its response within the deadline."""

    code = ErrorCode.REQUEST_TIMEOUT
    severity = ErrorSeverity.LOW

    def __init__(self, method: str, timeout: float, context: ErrorContext | None = None) -> None:
        super().__init__(f"Request '{method}' timed out after {timeout:.1f}s", context=context)
        self.method = method
        self.timeout = timeout


class ConnectionClosedError(TomosError):
    """The transport closed while a request was outstanding."""

    code = ErrorCode.CONNECTION_CLOSED


class ProtocolError(TomosError):
    """The server answered a request with a JSON-RPC error object."""

    code = ErrorCode.PROTOCOL_ERROR

    def __init__(
        self,
        message: str,
        rpc_code: int | None = None,
        data: Any = None,
        context: ErrorContext | None = None,
    ) -> None:
        super().__init__(message, context=context)
        self.rpc_code = rpc_code
        self.data = data

    @property
    def is_method_not_found(self) -> bool:
        return self.rpc_code == JsonRpcErrorCode.METHOD_NOT_FOUND


# ---------------------------------------------------------------------------
# Document and edit errors
# ---------------------------------------------------------------------------


class DocumentNotOpenError(TomosError):
    """A change or save referenced a document that is not tracked."""

    code = ErrorCode.DOCUMENT_NOT_OPEN

    def __init__(self, uri: str) -> None:
        super().__init__(
            f"Document {uri} is not open. Call open_document first.",
            context=ErrorContext(uri=uri),
        )
        self.uri = uri


class SymbolNotFoundError(TomosError):
    """No symbol with the requested name exists in the document."""

    code = ErrorCode.SYMBOL_NOT_FOUND
    severity = ErrorSeverity.LOW

    def __init__(self, name: str, uri: str) -> None:
        super().__init__(f"Symbol '{name}' not found in {uri}", context=ErrorContext(uri=uri))
        self.name = name
        self.uri = uri


class ApplyEditRejectedError(TomosError):
    """The server answered workspace/applyEdit with applied=false."""

    code = ErrorCode.APPLY_EDIT_REJECTED

    def __init__(self, reason: str | None = None, context: ErrorContext | None = None) -> None:
        super().__init__(
            f"Language server rejected the edit: {reason or 'Unknown reason'}",
            context=context,
        )
        self.reason = reason


class MirrorDesyncError(TomosError):
    """The protocol edit succeeded but writing the file mirror failed."""

    code = ErrorCode.MIRROR_DESYNC
    severity = ErrorSeverity.HIGH


class InvalidOperationError(TomosError):
    """An edit operation is missing required fields or has an unknown type."""

    code = ErrorCode.INVALID_OPERATION
    severity = ErrorSeverity.LOW


class FileAccessError(TomosError):
    """A workspace file could not be read or written."""

    code = ErrorCode.FILE_ACCESS_ERROR

    def __init__(self, uri: str, path: str, error: OSError, operation: str = "read") -> None:
        reason = error.strerror or str(error)
        super().__init__(
            f"Cannot {operation} {path}: {reason}",
            context=ErrorContext(operation=f"{operation}_file", uri=uri),
            original_error=error,
        )
        self.path = path


# ---------------------------------------------------------------------------
# Configuration errors
# ---------------------------------------------------------------------------


class ConfigurationError(TomosError):
    """Invalid settings or server table."""

    code = ErrorCode.INVALID_CONFIG
    severity = ErrorSeverity.HIGH


class UnsupportedLanguageError(TomosError):
    """No language server is configured for a language or file."""

    code = ErrorCode.UNSUPPORTED_LANGUAGE

    def __init__(self, language: str) -> None:
        super().__init__(f"Unsupported language: {language}", context=ErrorContext(language=language))
        self.language = language
