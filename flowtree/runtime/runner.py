"""
runner.py - Execution collaborator: runs an agent command and captures output.

The engine only depends on the CommandRunner interface; ShellCommandRunner is
the production implementation, tests inject fakes.

A nonzero exit status is returned as data (InvocationResult.exit_code /
success). Only failing to start the process, or running past the timeout,
raises InvocationError. Output that is not valid UTF-8 is decoded with
replacement characters.
"""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

from .errors import InvocationError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class InvocationResult:
    """Outcome of one agent invocation."""

    command: str
    work_dir: str
    stdout: str
    stderr: str
    exit_code: int
    started_at: datetime
    ended_at: datetime

    @property
    def duration_ms(self) -> int:
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class CommandRunner(ABC):
    """Blocking command execution."""

    @abstractmethod
    def invoke(
        self,
        command: str,
        work_dir: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> InvocationResult:
        """Run command to completion.

        Raises:
            InvocationError: The process could not be started or timed out.
        """


class ShellCommandRunner(CommandRunner):
    """Runs commands through the system shell.

    Args:
        env: Extra environment entries layered over os.environ (agent API keys).
    """

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        self._env = dict(env or {})

    def _environment(self) -> Dict[str, str]:
        merged = dict(os.environ)
        merged.update(self._env)
        return merged

    def invoke(
        self,
        command: str,
        work_dir: Optional[PathLike] = None,
        timeout: Optional[float] = None,
    ) -> InvocationResult:
        cwd = str(work_dir) if work_dir else str(Path.cwd())
        started_at = datetime.now(timezone.utc)
        logger.debug("Invoking agent command in %s (timeout=%s)", cwd, timeout)

        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                env=self._environment(),
            )
        except OSError as e:
            raise InvocationError(f"failed to start agent process: {e}") from e

        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.communicate()
            raise InvocationError(
                f"agent process timed out after {timeout}s", timed_out=True
            ) from e

        result = InvocationResult(
            command=command,
            work_dir=cwd,
            stdout=stdout or "",
            stderr=stderr or "",
            exit_code=process.returncode,
            started_at=started_at,
            ended_at=datetime.now(timezone.utc),
        )
        if not result.success:
            logger.warning(
                "Agent command exited with code %d after %d ms",
                result.exit_code,
                result.duration_ms,
            )
        return result
