"""Language server process supervision.

Owns one child process: spawns it with piped stdio and a fixed argument
vector (never a shell), drains its stderr into the debug log, reports its
exit code and tears it down in stages.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import IO

from tomos.lsp.util.subprocess_util import format_command, subprocess_kwargs
from tomos.types.errors import ErrorContext, ProcessSpawnError

log = logging.getLogger(__name__)


class LanguageServerProcess:
    """One running language server child process."""

    def __init__(
        self,
        binary: str,
        args: list[str],
        cwd: str,
        language: str,
        env: dict[str, str] | None = None,
    ) -> None:
        self.binary = binary
        self.args = list(args)
        self.cwd = cwd
        self.language = language
        self._env = env
        self._process: subprocess.Popen[bytes] | None = None
        self._stderr_thread: threading.Thread | None = None

    @property
    def argv(self) -> list[str]:
        return [self.binary, *self.args]

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def stdin(self) -> IO[bytes]:
        assert self._process is not None and self._process.stdin is not None
        return self._process.stdin

    @property
    def stdout(self) -> IO[bytes]:
        assert self._process is not None and self._process.stdout is not None
        return self._process.stdout

    @property
    def returncode(self) -> int | None:
        if self._process is None:
            return None
        return self._process.poll()

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self) -> None:
        """Spawn the process.

        Raises:
            ProcessSpawnError: If the operating system refuses to start it.
        """
        log.info("Starting %s language server: %s", self.language, format_command(self.argv))
        env = dict(os.environ)
        if self._env:
            env.update(self._env)
        try:
            self._process = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self.cwd,
                env=env,
                shell=False,
                **subprocess_kwargs(),
            )
        except OSError as e:
            raise ProcessSpawnError(
                f"Failed to start {self.language} language server '{self.binary}': {e}",
                context=ErrorContext(operation="spawn", language=self.language, component="process"),
                original_error=e,
            ) from e

        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name=f"lsp-stderr-{self.language}",
            daemon=True,
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        try:
            for raw in iter(stderr.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    log.debug("[%s stderr] %s", self.language, line)
        except (OSError, ValueError):
            # stream closed during shutdown
            pass

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the process to exit and return its exit code (None on timeout)."""
        if self._process is None:
            return None
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def stop(self, timeout: float = 5.0) -> int | None:
        """Terminate the process: close stdin, terminate, then kill.

        The LSP shutdown/exit exchange is the session's job and must happen
        before this is called.
        """
        process = self._process
        if process is None:
            return None

        if process.poll() is None:
            try:
                if process.stdin and not process.stdin.closed:
                    process.stdin.close()
            except OSError:
                log.debug("Error closing stdin of %s language server", self.language, exc_info=True)

            exit_code = self.wait(timeout=min(timeout, 1.0))
            if exit_code is None:
                log.debug("Terminating %s language server (pid %s)", self.language, process.pid)
                process.terminate()
                exit_code = self.wait(timeout=timeout)
            if exit_code is None:
                log.warning(
                    "%s language server (pid %s) ignored terminate, killing it",
                    self.language, process.pid,
                )
                process.kill()
                exit_code = self.wait(timeout=2.0)
                if exit_code is None:
                    log.error("%s language server (pid %s) could not be killed", self.language, process.pid)
        else:
            exit_code = process.returncode

        for stream in (process.stdout, process.stderr):
            try:
                if stream and not stream.closed:
                    stream.close()
            except OSError:
                pass
        log.info("%s language server stopped (exit code %s)", self.language, exit_code)
        return exit_code
