"""
Tomos type definitions.

This module exports the data types and the error hierarchy shared by the
LSP layer and the edit engine.
"""

# Core types
from .core import (
    CompletionItem,
    ContentChange,
    Diagnostic,
    EditOperation,
    EditOperationType,
    EditResult,
    HealthState,
    Location,
    Position,
    Range,
    ServerState,
    Symbol,
    SymbolKind,
    TextEdit,
    WorkspaceEdit,
)

# Error types
from .errors import (
    ApplyEditRejectedError,
    BinaryNotFoundError,
    ConfigurationError,
    ConnectionClosedError,
    DocumentNotOpenError,
    FileAccessError,
    ErrorCode,
    ErrorContext,
    ErrorSeverity,
    HandshakeError,
    HandshakeTimeoutError,
    InvalidOperationError,
    JsonRpcErrorCode,
    MirrorDesyncError,
    NotInitializedError,
    ProcessSpawnError,
    ProtocolError,
    RecoveryAction,
    RequestTimeoutError,
    RestartInProgressError,
    SecurityViolationError,
    SymbolNotFoundError,
    TomosError,
    UnsupportedLanguageError,
)

__all__ = [
    # Core types
    "CompletionItem",
    "ContentChange",
    "Diagnostic",
    "EditOperation",
    "EditOperationType",
    "EditResult",
    "HealthState",
    "Location",
    "Position",
    "Range",
    "ServerState",
    "Symbol",
    "SymbolKind",
    "TextEdit",
    "WorkspaceEdit",
    # Error types
    "ErrorCode",
    "ErrorContext",
    "ErrorSeverity",
    "JsonRpcErrorCode",
    "RecoveryAction",
    "TomosError",
    "ApplyEditRejectedError",
    "BinaryNotFoundError",
    "ConfigurationError",
    "ConnectionClosedError",
    "DocumentNotOpenError",
    "FileAccessError",
    "HandshakeError",
    "HandshakeTimeoutError",
    "InvalidOperationError",
    "MirrorDesyncError",
    "NotInitializedError",
    "ProcessSpawnError",
    "ProtocolError",
    "RequestTimeoutError",
    "RestartInProgressError",
    "SecurityViolationError",
    "SymbolNotFoundError",
    "UnsupportedLanguageError",
]
