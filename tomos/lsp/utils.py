"""Shared utilities for the LSP integration layer.

Contains path safety and URI conversion functions used by the protocol
session, the document tracker and the edit engine.
"""

from __future__ import annotations

import os
import pathlib
from urllib.parse import unquote, urlparse

from tomos.types.errors import ErrorContext, SecurityViolationError
from tomos.utils.security import is_within_root


def safe_join(root: str, relative_path: str) -> str:
    """Join root and relative path, ensuring result stays within root.

    Uses ``os.path.realpath`` to resolve symlinks and normalize the path
    before checking containment. Note that this involves a TOCTOU window:
    the filesystem state may change between the realpath check and any
    subsequent file operation.

    Raises:
        SecurityViolationError: If *relative_path* is empty, contains null
            bytes, or resolves outside the root.
    """
    if not relative_path:
        raise SecurityViolationError("relative_path must not be empty")
    if "\x00" in relative_path:
        raise SecurityViolationError("relative_path must not contain null bytes")

    abs_path = os.path.realpath(os.path.join(root, relative_path))
    if not is_within_root(abs_path, root):
        raise SecurityViolationError(
            f"Path traversal denied: '{relative_path}' resolves outside '{os.path.realpath(root)}'",
            context=ErrorContext(additional_info={"path": relative_path}),
        )
    return abs_path


def path_to_uri(path: str) -> str:
    """Convert a filesystem path to a file:// URI."""
    return pathlib.Path(os.path.abspath(path)).as_uri()


def uri_to_path(uri: str) -> str:
    """Convert a file:// URI to an absolute filesystem path.

    Non-file strings are returned unchanged, so callers may pass plain
    paths wherever a uri is expected.
    """
    if not uri.startswith("file://"):
        return uri
    parsed = urlparse(uri)
    path = unquote(parsed.path)
    # file:///C:/x on Windows
    if os.name == "nt" and path.startswith("/") and len(path) > 2 and path[2] == ":":
        path = path[1:]
    return path


def uri_to_relative(uri: str, project_root: str) -> str:
    """Convert a file:// URI to a project-relative path."""
    abs_path = uri_to_path(uri)
    try:
        return str(pathlib.Path(abs_path).relative_to(project_root))
    except ValueError:
        return abs_path


def resolve_document_path(uri: str, root: str) -> str:
    """Resolve a uri (or path) to an absolute path that must lie inside root.

    Raises:
        SecurityViolationError: If the target resolves outside root.
    """
    path = uri_to_path(uri)
    if os.path.isabs(path):
        if not is_within_root(path, root):
            raise SecurityViolationError(
                f"Path traversal denied: '{path}' resolves outside '{os.path.realpath(root)}'",
                context=ErrorContext(uri=uri),
            )
        return os.path.realpath(path)
    return safe_join(root, path)


def normalize_uri(uri_or_path: str, root: str) -> str:
    """Return the canonical file:// URI for a uri or a root-relative path."""
    if uri_or_path.startswith("file://"):
        return uri_or_path
    if os.path.isabs(uri_or_path):
        return path_to_uri(uri_or_path)
    return path_to_uri(os.path.join(root, uri_or_path))
