"""
Configuration objects for language servers
"""

from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tomos.types.errors import ConfigurationError


class FilenameMatcher:
    def __init__(self, *patterns: str) -> None:
        """
        :param patterns: fnmatch-compatible patterns
        """
        self.patterns = patterns

    def is_relevant_filename(self, fn: str) -> bool:
        for pattern in self.patterns:
            if fnmatch.fnmatch(fn, pattern):
                return True
        return False

    @classmethod
    def for_extensions(cls, extensions: Iterable[str]) -> FilenameMatcher:
        return cls(*(f"*{ext}" for ext in extensions))


class Language(str, Enum):
    """
    Languages with a default language server command.
    """

    TYPESCRIPT = "typescript"
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    GO = "go"
    JAVA = "java"
    RUST = "rust"

    def __str__(self) -> str:
        return self.value


@dataclass
class LanguageServerConfig:
    """
    How to launch the language server for one language.

    :param language: language name used as the routing key (e.g. "python").
    :param command: executable name or absolute path; never run through a shell.
    :param args: fixed argument list passed to the executable.
    :param extensions: file extensions (with leading dot) routed to this server.
    :param language_id: LSP languageId sent in didOpen; defaults to ``language``.
    :param initialization_options: passed verbatim in the initialize request.
    """

    language: str
    command: str
    args: list[str] = field(default_factory=list)
    extensions: list[str] = field(default_factory=list)
    language_id: str | None = None
    initialization_options: dict[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.language:
            raise ConfigurationError("language must not be empty")
        if not self.command:
            raise ConfigurationError(f"command for '{self.language}' must not be empty")
        if not isinstance(self.args, list) or not all(isinstance(a, str) for a in self.args):
            raise ConfigurationError(f"args for '{self.language}' must be a list of strings")
        self.extensions = [ext if ext.startswith(".") else f".{ext}" for ext in self.extensions]
        if self.language_id is None:
            self.language_id = self.language

    def get_source_fn_matcher(self) -> FilenameMatcher:
        return FilenameMatcher.for_extensions(self.extensions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "args": list(self.args),
            "extensions": list(self.extensions),
            "language_id": self.language_id,
        }

    @classmethod
    def from_dict(cls, language: str, data: Mapping[str, Any]) -> LanguageServerConfig:
        if "command" not in data:
            raise ConfigurationError(f"server config for '{language}' is missing 'command'")
        return cls(
            language=language,
            command=data["command"],
            args=list(data.get("args", [])),
            extensions=list(data.get("extensions", [])),
            language_id=data.get("language_id"),
            initialization_options=data.get("initialization_options"),
        )


DEFAULT_LANGUAGE_SERVERS: dict[str, LanguageServerConfig] = {
    Language.TYPESCRIPT.value: LanguageServerConfig(
        language="typescript",
        command="typescript-language-server",
        args=["--stdio"],
        extensions=[".ts", ".tsx", ".mts", ".cts"],
    ),
    Language.JAVASCRIPT.value: LanguageServerConfig(
        language="javascript",
        command="typescript-language-server",
        args=["--stdio"],
        extensions=[".js", ".jsx", ".mjs", ".cjs"],
    ),
    Language.PYTHON.value: LanguageServerConfig(
        language="python",
        command="pyright-langserver",
        args=["--stdio"],
        extensions=[".py", ".pyi"],
    ),
    Language.GO.value: LanguageServerConfig(
        language="go",
        command="gopls",
        extensions=[".go"],
    ),
    Language.JAVA.value: LanguageServerConfig(
        language="java",
        command="jdtls",
        extensions=[".java"],
    ),
    Language.RUST.value: LanguageServerConfig(
        language="rust",
        command="rust-analyzer",
        extensions=[".rs"],
    ),
}


def default_language_servers() -> dict[str, LanguageServerConfig]:
    """Return a fresh copy of the default server table."""
    return {
        name: LanguageServerConfig.from_dict(name, cfg.to_dict())
        for name, cfg in DEFAULT_LANGUAGE_SERVERS.items()
    }
