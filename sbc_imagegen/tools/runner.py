"""External tool execution.

This module handles:
- The narrow ToolRunner interface every call site depends on
- Executing commands with subprocess and capturing their output
- Appending command output to an optional tool log file
- Host tool prerequisite checks

Assembly code never calls subprocess directly, so tests substitute a fake
runner that records commands.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from sbc_imagegen.errors import ToolExecutionError, ToolPrerequisiteError

logger = logging.getLogger(__name__)

# Trailing stderr characters quoted in error messages
STDERR_TAIL = 400


@dataclass
class CommandResult:
    """Result of an external command.

    Attributes:
        command: The command that was executed.
        exit_code: Process exit code.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    command: list[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        """Whether the command exited with status 0."""
        return self.exit_code == 0


class ToolRunner(Protocol):
    """Interface for running external tools."""

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command to completion.

        Raises:
            ToolExecutionError: If the command cannot start, or exits
                non-zero while check is True.
        """
        ...

    def which(self, name: str) -> str | None:
        """Locate an executable on PATH."""
        ...


def _stderr_tail(stderr: str) -> str:
    tail = stderr.strip()[-STDERR_TAIL:]
    return f": {tail}" if tail else ""


class SubprocessToolRunner:
    """ToolRunner backed by subprocess.run.

    Args:
        log_path: Optional file receiving every command's output.
        env_override: Optional environment variable overrides.
    """

    def __init__(
        self,
        log_path: Path | None = None,
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.log_path = log_path
        self.env_override = env_override

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        cwd: Path | None = None,
        input_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = [os.fspath(c) for c in cmd]
        cmd_str = shlex.join(command)
        logger.info("Executing: %s", cmd_str)
        if cwd is not None:
            logger.debug("Working directory: %s", cwd)

        env: dict[str, str] | None = None
        if self.env_override:
            env = dict(os.environ)
            env.update(self.env_override)

        started_at = datetime.now(timezone.utc)
        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                input=input_text,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=env,
                check=False,
            )
        except OSError as e:
            logger.error("Failed to execute %s: %s", command[0], e)
            raise ToolExecutionError(
                f"Failed to execute {command[0]}: {e}",
                command,
                code="execution_error",
            ) from e

        result = CommandResult(
            command=command,
            exit_code=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        self._append_log(cmd_str, cwd, started_at, result)

        if check and not result.success:
            message = (
                f"{command[0]} failed with exit code {result.exit_code}"
                f"{_stderr_tail(result.stderr)}"
            )
            logger.error(message)
            raise ToolExecutionError(
                message,
                command,
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        return result

    def which(self, name: str) -> str | None:
        return shutil.which(name)

    def _append_log(
        self,
        cmd_str: str,
        cwd: Path | None,
        started_at: datetime,
        result: CommandResult,
    ) -> None:
        if self.log_path is None:
            return
        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as log_file:
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            if cwd is not None:
                log_file.write(f"# CWD: {cwd}\n")
            log_file.write("# " + "=" * 70 + "\n")
            if result.stdout:
                log_file.write(result.stdout)
                if not result.stdout.endswith("\n"):
                    log_file.write("\n")
            if result.stderr:
                log_file.write(result.stderr)
                if not result.stderr.endswith("\n"):
                    log_file.write("\n")
            log_file.write(f"# Exit code: {result.exit_code}\n")
            log_file.write(f"# Duration: {duration:.1f}s\n\n")


def require_tools(runner: ToolRunner, names: Iterable[str]) -> None:
    """Check that host tools are available on PATH.

    Raises:
        ToolPrerequisiteError: For the first tool that is not found.
    """
    for name in names:
        if runner.which(name) is None:
            raise ToolPrerequisiteError(f"Required host tool '{name}'")


def require_executable(path: Path, what: str) -> None:
    """Check that a vendor tool exists and is executable.

    Raises:
        ToolPrerequisiteError: If the file is missing or not executable.
    """
    if not (path.is_file() and os.access(path, os.X_OK)):
        raise ToolPrerequisiteError(f"{what} (executable)", str(path))


def require_file(path: Path, what: str) -> None:
    """Check that a tool input file exists.

    Raises:
        ToolPrerequisiteError: If the file is missing.
    """
    if not path.is_file():
        raise ToolPrerequisiteError(what, str(path))


__all__ = [
    "CommandResult",
    "SubprocessToolRunner",
    "ToolRunner",
    "require_executable",
    "require_file",
    "require_tools",
]
