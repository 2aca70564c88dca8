"""The ``run`` command: flash the binary, capture its logs and extract coverage.

:func:`run_gdb_sequence` owns the concurrent part of a run.  Once GDB
reports that the RTT server is up, the RTT stream is decoded on a background
thread while the main thread waits for GDB to quit.  The two only share a
:class:`~emrunner.cancel.CancelToken`, set once after GDB has exited.
"""

from __future__ import annotations

import json
import logging
import socket
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO, Tuple

from tabulate import tabulate

from . import __version__
from .cancel import CancelToken
from .config import ResolvedConfig, RunnerConfig, SetupError
from .coverage import (
    CoverageSchema,
    NoFrames,
    Test,
    TestOutcome,
    coverage_from_frames,
    coverages_filepath,
    record_coverage_file,
    write_coverage,
)
from .elf import find_symbol
from .frames import LogFrame, dumps_ndjson
from .gdb import DebugSessionError, GdbSession
from .gdb_script import render_gdb_script, write_gdb_script
from .hooks import run_hook
from .paths import absolute_path
from .reader import FrameCallback, FrameDecoder, read_frames
from .transport import TransportConfig, connect

logger = logging.getLogger(__name__)
target_logger = logging.getLogger("emrunner.target")

DEFMT_LOG_NAME = "defmt.json"
COVERAGE_NAME = "coverage.json"
META_NAME = "meta.json"


def banner(title: str, out: Optional[TextIO] = None) -> None:
    print(f"--------------- {title} --------------------", file=out or sys.stdout, flush=True)


class _DecodeThread(threading.Thread):
    """Runs :func:`read_frames` and keeps its result for the joining thread."""

    def __init__(
        self,
        sock: socket.socket,
        decoder: FrameDecoder,
        cancel: CancelToken,
        on_frame: Optional[FrameCallback] = None,
    ) -> None:
        super().__init__(name="rtt-decode", daemon=True)
        self.sock = sock
        self.decoder = decoder
        self.cancel = cancel
        self.on_frame = on_frame
        self.frames: List[LogFrame] = []
        self.error: Optional[Exception] = None

    def run(self) -> None:
        try:
            self.frames = read_frames(self.sock, self.decoder, self.cancel, on_frame=self.on_frame)
        except Exception as exc:
            self.error = exc
        finally:
            self.sock.close()


def run_gdb_sequence(
    binary: Path,
    workspace_dir: Path,
    script: Path,
    runner_cfg: RunnerConfig,
    decoder: FrameDecoder,
    *,
    on_frame: Optional[FrameCallback] = None,
    output: Optional[TextIO] = None,
    command: Optional[List[str]] = None,
    host: str = "127.0.0.1",
) -> Tuple[List[LogFrame], int]:
    """Run GDB against ``script`` and collect the frames sent over RTT.

    Returns the captured frames and GDB's exit status.  The GDB process is
    killed whenever a stage fails.
    """
    session = GdbSession(
        script,
        binary,
        cwd=workspace_dir,
        executable=runner_cfg.gdb_executable,
        ready_marker=runner_cfg.rtt_ready_marker.encode(),
        output=output,
        command=command,
    )
    cancel = CancelToken()
    worker: Optional[_DecodeThread] = None
    try:
        session.start()
        started = time.monotonic()
        session.wait_ready(runner_cfg.setup_timeout)
        remaining = runner_cfg.setup_timeout - (time.monotonic() - started)
        sock = connect(TransportConfig(host=host, port=runner_cfg.rtt_port), max(remaining, 0.0))
        worker = _DecodeThread(sock, decoder, cancel, on_frame)
        worker.start()
        exit_code = session.wait(runner_cfg.execution_timeout)
    finally:
        cancel.cancel()
        if worker is not None:
            worker.join()
        session.kill()
    if worker.error is not None:
        raise worker.error
    return worker.frames, exit_code


def print_frames(frames: Sequence[LogFrame], out: Optional[TextIO] = None) -> None:
    for frame in frames:
        location = frame.location_str()
        if frame.level is not None:
            target_logger.log(frame.level.logging_level, "%s\n@%s", frame.text, location)
        else:
            print(f"{frame.text}\n@{location}", file=out or sys.stdout)


def load_meta(path: Path, binary: Path) -> Dict[str, Any]:
    meta: Dict[str, Any] = {"binary": binary.as_posix()}
    if not path.is_file():
        return meta
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SetupError(f"Could not read metadata '{path}'. Cause: {exc}") from exc
    if not isinstance(data, dict):
        raise SetupError(f"Metadata in '{path}' must be a JSON object.")
    meta.update(data)
    meta["binary"] = binary.as_posix()
    return meta


def _state_label(test: Test) -> str:
    if test.state.outcome is TestOutcome.SKIPPED and test.state.reason:
        return f"skipped ({test.state.reason})"
    return test.state.outcome.value


def summary_table(schema: CoverageSchema) -> str:
    rows = []
    for run in schema.test_runs:
        for test in run.tests:
            lines = sum(len(cf.covered_traces) for cf in test.covered_files)
            rows.append([test.name, _state_label(test), f"{test.filepath}:{test.line}", lines])
    return tabulate(rows, headers=["Test", "State", "Location", "Covered lines"], tablefmt="github")


@dataclass
class RunOptions:
    binary: Path
    run_name: Optional[str] = None
    output_dir: Optional[Path] = None
    meta_filepath: Optional[Path] = None


@dataclass
class RunResult:
    frames: List[LogFrame]
    exit_code: int
    output_dir: Path
    coverage: Optional[CoverageSchema] = None
    coverage_file: Optional[Path] = None
    log_file: Optional[Path] = None


def _prepare_output_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise SetupError(f"Could not create directory '{path}'. Cause: {exc}") from exc
    return path


def run_cmd(cfg: ResolvedConfig, options: RunOptions, *, command: Optional[List[str]] = None) -> RunResult:
    runner_cfg = cfg.runner_cfg
    binary = absolute_path(options.binary)
    run_name = options.run_name or binary.stem
    output_dir = _prepare_output_dir(
        absolute_path(options.output_dir) if options.output_dir else cfg.embedded_dir / "runs" / run_name
    )

    pre_runner = runner_cfg.pre_runner_for(cfg.platform)
    if pre_runner is not None:
        banner("Pre Runner")
        run_hook(pre_runner, binary, cfg.workspace_dir, label="pre runner")

    if not binary.is_file():
        raise SetupError(f"Binary '{binary}' does not exist.")
    decoder = FrameDecoder.from_binary(binary, root=cfg.workspace_dir)
    symbol = find_symbol(binary, runner_cfg.rtt_block_symbol)
    script = write_gdb_script(
        render_gdb_script(runner_cfg, symbol, binary, output_dir, cfg.platform),
        output_dir,
    )

    banner("GDB")
    frames, exit_code = run_gdb_sequence(binary, cfg.workspace_dir, script, runner_cfg, decoder, command=command)
    if exit_code != 0:
        raise DebugSessionError(f"GDB did not run successfully. Exit code: '{exit_code}'")

    banner("Logs")
    print_frames(frames)
    logs = dumps_ndjson(frames)
    log_file = output_dir / DEFMT_LOG_NAME
    log_file.write_text(logs, encoding="utf-8")
    result = RunResult(frames=frames, exit_code=exit_code, output_dir=output_dir, log_file=log_file)

    meta_path = absolute_path(options.meta_filepath) if options.meta_filepath else cfg.embedded_dir / META_NAME
    meta = load_meta(meta_path, binary)
    try:
        schema = coverage_from_frames(run_name, frames, meta, logs, version=__version__)
    except NoFrames as exc:
        logger.warning("%s No coverage written.", exc)
        schema = None
    if schema is not None and any(run.tests for run in schema.test_runs):
        banner("Coverage")
        coverage_file = output_dir / COVERAGE_NAME
        write_coverage(schema, coverage_file)
        record_coverage_file(coverages_filepath(cfg.embedded_dir), coverage_file)
        print(summary_table(schema))
        result.coverage = schema
        result.coverage_file = coverage_file
    elif schema is not None:
        logger.info("No tests found in the captured logs.")

    post_runner = runner_cfg.post_runner_for(cfg.platform)
    if post_runner is not None:
        banner("Post Runner")
        run_hook(post_runner, binary, cfg.workspace_dir, label="post runner")

    return result
