"""Turn a captured frame sequence into a test run with requirement coverage.

The test harness on the target announces every test with a marker frame
such as ``(1/3) running `it_works`...`` or ``(2/3) ignoring `slow`...`` and
ends with ``all tests passed!``.  Test code may additionally log coverage
markers (``mantra: req-id=`R1`; file='src/lib.rs'; line='10';``) which are
attributed to the test that is currently running.
"""

from __future__ import annotations

import enum
import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from .errors import RunnerError
from .frames import LogFrame

logger = logging.getLogger(__name__)

ALL_TESTS_PASSED = "all tests passed!"
TEST_MARKER_PATTERN = (
    r"^\((?P<index>\d+)/(?P<nr_tests>\d+)\)\s(?P<state>running|ignoring)\s`(?P<fn_name>.+)`..."
)
COVERAGE_MARKER_PATTERN = (
    r"mantra: req-id=`(?P<req_id>[^`]+)`; file='(?P<file>[^']+)'; line='(?P<line>\d+)';"
)
COVERAGES_INDEX_NAME = "coverages.txt"


class CoverageError(RunnerError):
    """Raised when a frame sequence cannot be turned into a test run."""


class NoFrames(CoverageError):
    pass


class BadTimestamp(CoverageError):
    pass


class MissingLocation(CoverageError):
    pass


class MarkerSequenceError(CoverageError):
    """A test marker carries an index outside ``1..N``."""


class TestOutcome(enum.Enum):
    __test__ = False

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class TestState:
    __test__ = False

    outcome: TestOutcome
    reason: Optional[str] = None

    @classmethod
    def skipped(cls, reason: Optional[str] = None) -> "TestState":
        return cls(TestOutcome.SKIPPED, reason)

    def to_json(self) -> Any:
        if self.outcome is TestOutcome.SKIPPED:
            return {"skipped": {"reason": self.reason}}
        return self.outcome.value

    @classmethod
    def from_json(cls, value: Any) -> "TestState":
        if isinstance(value, str):
            return cls(TestOutcome(value.lower()))
        if isinstance(value, Mapping) and "skipped" in value:
            details = value["skipped"] or {}
            return cls.skipped(details.get("reason"))
        raise ValueError(f"invalid test state {value!r}")


PASSED = TestState(TestOutcome.PASSED)
FAILED = TestState(TestOutcome.FAILED)


@dataclass
class CoveredFileTrace:
    line: int
    req_ids: Set[str] = field(default_factory=set)

    def to_json(self) -> Dict[str, Any]:
        return {"line": self.line, "req_ids": sorted(self.req_ids)}

    @classmethod
    def from_json(cls, value: Mapping[str, Any]) -> "CoveredFileTrace":
        return cls(line=int(value["line"]), req_ids=set(value.get("req_ids") or ()))


@dataclass
class CoveredFile:
    filepath: str
    covered_traces: List[CoveredFileTrace] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "filepath": self.filepath,
            "covered_traces": [trace.to_json() for trace in self.covered_traces],
        }

    @classmethod
    def from_json(cls, value: Mapping[str, Any]) -> "CoveredFile":
        return cls(
            filepath=str(value["filepath"]),
            covered_traces=[CoveredFileTrace.from_json(t) for t in value.get("covered_traces") or ()],
        )


@dataclass
class Test:
    __test__ = False

    name: str
    filepath: str
    line: int
    state: TestState = FAILED
    covered_files: List[CoveredFile] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "filepath": self.filepath,
            "line": self.line,
            "state": self.state.to_json(),
            "covered_files": [cf.to_json() for cf in self.covered_files],
        }

    @classmethod
    def from_json(cls, value: Mapping[str, Any]) -> "Test":
        return cls(
            name=str(value["name"]),
            filepath=str(value["filepath"]),
            line=int(value["line"]),
            state=TestState.from_json(value["state"]),
            covered_files=[CoveredFile.from_json(cf) for cf in value.get("covered_files") or ()],
        )


@dataclass
class TestRun:
    __test__ = False

    name: str
    date: datetime
    meta: Optional[Any] = None
    logs: Optional[str] = None
    tests: List[Test] = field(default_factory=list)
    nr_of_tests: int = 0

    def to_json(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "date": format_date(self.date),
            "meta": self.meta,
            "logs": self.logs,
            "tests": [test.to_json() for test in self.tests],
            "nr_of_tests": self.nr_of_tests,
        }

    @classmethod
    def from_json(cls, value: Mapping[str, Any]) -> "TestRun":
        return cls(
            name=str(value["name"]),
            date=datetime.fromisoformat(str(value["date"])),
            meta=value.get("meta"),
            logs=value.get("logs"),
            tests=[Test.from_json(t) for t in value.get("tests") or ()],
            nr_of_tests=int(value.get("nr_of_tests") or 0),
        )


@dataclass
class CoverageSchema:
    test_runs: List[TestRun] = field(default_factory=list)
    version: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        return {"version": self.version, "test_runs": [run.to_json() for run in self.test_runs]}

    @classmethod
    def from_json(cls, value: Mapping[str, Any]) -> "CoverageSchema":
        if not isinstance(value, Mapping):
            raise ValueError("coverage data must be a JSON object")
        return cls(
            test_runs=[TestRun.from_json(run) for run in value.get("test_runs") or ()],
            version=value.get("version"),
        )

    @classmethod
    def merge(cls, schemas: Iterable["CoverageSchema"], *, version: Optional[str] = None) -> "CoverageSchema":
        merged = cls(version=version)
        for schema in schemas:
            merged.test_runs.extend(schema.test_runs)
        return merged


def format_date(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def date_from_timestamp(ns: int) -> datetime:
    try:
        base = datetime.fromtimestamp(ns // 10**9, tz=timezone.utc)
        return base + timedelta(microseconds=(ns % 10**9) // 1000)
    except (OverflowError, ValueError, OSError) as exc:
        raise BadTimestamp(f"Timestamp '{ns}' is not a valid date.") from exc


def format_coverage_marker(req_id: str, file: str, line: int) -> str:
    """Render the coverage marker text that test code logs for ``req_id``."""
    return f"mantra: req-id=`{req_id}`; file='{file}'; line='{line}';"


class CoverageExtractor:
    """State machine folding test and coverage markers into a :class:`TestRun`.

    A single extractor may be reused for several runs; matchers are compiled
    once per instance.
    """

    def __init__(
        self,
        test_marker: str = TEST_MARKER_PATTERN,
        coverage_marker: str = COVERAGE_MARKER_PATTERN,
    ) -> None:
        self.test_matcher = re.compile(test_marker)
        self.coverage_matcher = re.compile(coverage_marker)

    def extract(
        self,
        run_name: str,
        frames: Sequence[LogFrame],
        *,
        meta: Optional[Any] = None,
        logs: Optional[str] = None,
        version: Optional[str] = None,
    ) -> CoverageSchema:
        if not frames:
            raise NoFrames("No frames captured, so no tests were found.")
        run = TestRun(name=run_name, date=date_from_timestamp(frames[0].host_timestamp), meta=meta, logs=logs)
        state = _RunState(run)
        for frame in frames:
            marker = self.test_matcher.match(frame.text)
            if marker is not None:
                self._on_test_marker(state, frame, marker)
                continue
            covered = self.coverage_matcher.search(frame.text)
            if covered is not None:
                state.cover(covered.group("file"), int(covered.group("line")), covered.group("req_id"))
            elif frame.text == ALL_TESTS_PASSED:
                state.finish_current()
        # a test still open here never reported success
        state.finish_current(FAILED)
        return CoverageSchema(test_runs=[run], version=version)

    def _on_test_marker(self, state: "_RunState", frame: LogFrame, marker: re.Match) -> None:
        state.finish_current()
        index = int(marker.group("index"))
        nr_tests = int(marker.group("nr_tests"))
        if not 1 <= index <= nr_tests:
            raise MarkerSequenceError(f"Test index {index} is out of range 1..{nr_tests} in '{frame.text}'.")
        state.declare_total(nr_tests)

        loc = frame.location
        if loc.file is None:
            raise MissingLocation(f"Missing file location information for log entry '{frame.text}'.")
        if loc.line is None:
            raise MissingLocation(f"Missing line location information for log entry '{frame.text}'.")
        if loc.module_path is None:
            raise MissingLocation(f"Missing module path information for log entry '{frame.text}'.")
        prefix = "::".join((loc.module_path.crate_name, *loc.module_path.modules))
        test = Test(name=f"{prefix}::{marker.group('fn_name')}", filepath=loc.file, line=loc.line)

        if marker.group("state") == "running":
            state.open(test)
        else:
            test.state = TestState.skipped()
            state.push_skipped(test)


class _RunState:
    """Per-run bookkeeping: the open test and its coverage accumulator."""

    def __init__(self, run: TestRun) -> None:
        self.run = run
        self.current: Optional[Test] = None
        self.pending: Dict[str, Dict[int, Set[str]]] = {}
        self._total_seen = False

    def declare_total(self, nr_tests: int) -> None:
        if not self._total_seen:
            self.run.nr_of_tests = nr_tests
            self._total_seen = True
        elif nr_tests != self.run.nr_of_tests:
            logger.warning(
                "test marker declares %d tests but the run started with %d; keeping %d",
                nr_tests,
                self.run.nr_of_tests,
                self.run.nr_of_tests,
            )

    def open(self, test: Test) -> None:
        self.current = test

    def push_skipped(self, test: Test) -> None:
        self.run.tests.append(test)

    def cover(self, file: str, line: int, req_id: str) -> None:
        if self.current is None:
            logger.debug("coverage of '%s' at %s:%d outside of a test discarded", req_id, file, line)
            return
        self.pending.setdefault(file, {}).setdefault(line, set()).add(req_id)

    def finish_current(self, outcome: TestState = PASSED) -> None:
        test = self.current
        if test is None:
            return
        test.state = outcome
        test.covered_files = [
            CoveredFile(
                filepath=file,
                covered_traces=[CoveredFileTrace(line=line, req_ids=set(ids)) for line, ids in lines.items()],
            )
            for file, lines in self.pending.items()
        ]
        self.pending = {}
        self.current = None
        self.run.tests.append(test)


def coverage_from_frames(
    run_name: str,
    frames: Sequence[LogFrame],
    meta: Optional[Any] = None,
    logs: Optional[str] = None,
    *,
    version: Optional[str] = None,
) -> CoverageSchema:
    return CoverageExtractor().extract(run_name, frames, meta=meta, logs=logs, version=version)


def load_coverage(path: Path) -> CoverageSchema:
    with open(path, "r", encoding="utf-8") as fh:
        return CoverageSchema.from_json(json.load(fh))


def write_coverage(schema: CoverageSchema, path: Path) -> None:
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text(json.dumps(schema.to_json(), indent=2), encoding="utf-8")
    tmp_path.replace(path)


def coverages_filepath(embedded_dir: Path) -> Path:
    return Path(embedded_dir) / COVERAGES_INDEX_NAME


def record_coverage_file(index: Path, coverage_file: Path) -> None:
    """Append ``coverage_file`` to the collection index."""
    with open(index, "a", encoding="utf-8") as fh:
        fh.write(os.path.abspath(coverage_file) + "\n")
