"""Locating the Cargo workspace the firmware is built in."""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from .errors import RunnerError

logger = logging.getLogger(__name__)


class PathError(RunnerError):
    """Raised when the workspace root cannot be determined."""


def _find_manifest_upwards(start: Path) -> Optional[Path]:
    found: Optional[Path] = None
    for candidate in (start, *start.parents):
        if (candidate / "Cargo.toml").is_file():
            found = candidate
    return found


def get_workspace_root(start: Optional[Path] = None, *, cargo: Optional[str] = None) -> Path:
    """Return the workspace directory of the Cargo project around ``start``.

    ``cargo locate-project --workspace`` is asked first.  Without a working
    Cargo the outermost directory holding a ``Cargo.toml`` is used, and the
    start directory itself when there is none.
    """
    start = Path(start or os.getcwd()).resolve()
    cargo = cargo or os.environ.get("CARGO", "cargo")
    try:
        result = subprocess.run(
            [cargo, "locate-project", "--workspace", "--quiet", "--message-format=plain"],
            cwd=start,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.debug("could not execute cargo: %s", exc)
    else:
        manifest = result.stdout.strip()
        if result.returncode == 0 and manifest:
            return Path(manifest).parent
        logger.debug("cargo could not locate the workspace: %s", result.stderr.strip())
    fallback = _find_manifest_upwards(start)
    if fallback is not None:
        return fallback
    if not start.is_dir():
        raise PathError(f"Could not determine the workspace directory from '{start}'.")
    logger.warning("No Cargo workspace found; using '%s' as workspace directory.", start)
    return start


def absolute_path(path: Path, base: Optional[Path] = None) -> Path:
    """Return ``path`` made absolute against ``base`` (the cwd by default), normalised."""
    path = Path(path)
    if not path.is_absolute():
        path = Path(base or os.getcwd()) / path
    return Path(os.path.normpath(path))
