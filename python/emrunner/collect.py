"""The ``collect`` command: merge the coverage files of recent runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from .coverage import CoverageSchema, coverages_filepath, load_coverage, write_coverage
from .errors import RunnerError

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = Path("coverage.json")


class CollectError(RunnerError):
    pass


def _load(path: Path) -> CoverageSchema:
    try:
        return load_coverage(path)
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise CollectError(f"Could not read coverage file '{path}'. Cause: {exc}") from exc


def run(embedded_dir: Path, output: Optional[Path] = None, *, version: Optional[str] = None) -> Optional[Path]:
    """Merge every coverage file listed in the index into ``output``.

    Test runs already stored in ``output`` are kept.  The index is removed
    afterwards so the next collection only sees new runs.  Returns the output
    path, or ``None`` when there was nothing to collect.
    """
    index = coverages_filepath(embedded_dir)
    if not index.is_file():
        logger.info("No coverage to collect.")
        return None

    output = Path(output) if output is not None else DEFAULT_OUTPUT
    if output.is_dir():
        raise CollectError("Output path must point to a JSON file.")

    schemas: List[CoverageSchema] = []
    for line in index.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        path = Path(line.strip())
        if not path.is_file():
            logger.error("Missing coverage file '%s'.", path)
            continue
        schemas.append(_load(path))

    if not any(schema.test_runs for schema in schemas):
        logger.info("No coverages found.")
        return None

    if output.is_file():
        schemas.insert(0, _load(output))
    merged = CoverageSchema.merge(schemas, version=version)
    write_coverage(merged, output)
    logger.info("collected %d test run(s) into '%s'", len(merged.test_runs), output)
    index.unlink()
    return output

