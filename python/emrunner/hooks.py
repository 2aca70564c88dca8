"""Pre- and post-runner commands from the runner config."""

from __future__ import annotations

import logging
import subprocess
import sys
from pathlib import Path
from typing import Optional, TextIO

from .config import Command
from .errors import RunnerError

logger = logging.getLogger(__name__)


class HookError(RunnerError):
    """A hook command failed; carries its captured output."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr

    def __str__(self) -> str:
        text = super().__str__()
        if self.stdout:
            text += f"\nstdout:\n{self.stdout}"
        if self.stderr:
            text += f"\nstderr:\n{self.stderr}"
        return text


def run_hook(
    command: Command,
    binary: Path,
    cwd: Path,
    *,
    label: str = "hook",
    output: Optional[TextIO] = None,
) -> None:
    """Run ``command`` with the binary path as last argument.

    Output is echoed to ``output`` (stdout by default).  A non-zero exit
    status raises :class:`HookError`.
    """
    argv = [command.name, *command.args, str(binary)]
    logger.debug("running %s: %s", label, " ".join(argv))
    try:
        result = subprocess.run(argv, cwd=cwd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise HookError(f"Could not start {label} '{command.name}'. Cause: {exc}") from exc
    sink = output or sys.stdout
    if result.stdout:
        sink.write(result.stdout)
    if result.stderr:
        sink.write(result.stderr)
    sink.flush()
    if result.returncode != 0:
        raise HookError(
            f"{label} '{command.name}' exited with status {result.returncode}",
            stdout=result.stdout,
            stderr=result.stderr,
        )
