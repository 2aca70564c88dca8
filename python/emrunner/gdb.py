"""Supervision of the external GDB process that drives the debug adapter.

GDB is started with the generated session script.  Its stderr carries the
OpenOCD diagnostics, which are echoed live and scanned for the readiness
marker that OpenOCD prints once the RTT server listens.  After that the
process keeps running in the background until the script quits or the
execution timeout expires.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import BinaryIO, List, Optional, TextIO

from .errors import RunnerError

logger = logging.getLogger(__name__)

DEFAULT_GDB = "arm-none-eabi-gdb"
READY_MARKER = b"for rtt connection"
_PUMP_CHUNK = 100


class DebugSessionError(RunnerError):
    """Raised when the debugger cannot be started or supervised."""


class ReadinessTimeout(DebugSessionError):
    pass


class ExecutionTimeout(DebugSessionError):
    pass


class SessionExited(DebugSessionError):
    """GDB exited before the readiness marker was seen."""


class MarkerScanner:
    """Byte-wise substring detector that works across chunk boundaries."""

    def __init__(self, marker: bytes) -> None:
        if not marker:
            raise ValueError("marker must not be empty")
        self.marker = marker
        self.found = False
        self._tail = b""

    def feed(self, chunk: bytes) -> bool:
        if self.found:
            return True
        window = self._tail + chunk
        if self.marker in window:
            self.found = True
        else:
            self._tail = window[-(len(self.marker) - 1):] if len(self.marker) > 1 else b""
        return self.found


class _OutputPump(threading.Thread):
    """Copies one debugger pipe to a host stream, optionally scanning for a marker."""

    def __init__(self, pipe: BinaryIO, sink: TextIO, scanner: Optional[MarkerScanner] = None) -> None:
        super().__init__(daemon=True)
        self.pipe = pipe
        self.sink = sink
        self.scanner = scanner
        self.ready = threading.Event()

    def run(self) -> None:
        while True:
            try:
                chunk = self.pipe.read(_PUMP_CHUNK)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            self.sink.write(chunk.decode("utf-8", errors="replace"))
            self.sink.flush()
            if self.scanner is not None and not self.ready.is_set() and self.scanner.feed(chunk):
                self.ready.set()


class GdbSession:
    """Spawns GDB against a script and a binary and supervises the process."""

    def __init__(
        self,
        script: Path,
        binary: Path,
        *,
        cwd: Path,
        executable: str = DEFAULT_GDB,
        ready_marker: bytes = READY_MARKER,
        output: Optional[TextIO] = None,
        command: Optional[List[str]] = None,
    ) -> None:
        self.script = Path(script)
        self.binary = Path(binary)
        self.cwd = Path(cwd)
        self.command = command or [executable, "-x", str(self.script), str(self.binary)]
        self.ready_marker = ready_marker
        self.output = output
        self.process: Optional[subprocess.Popen] = None
        self._pumps: List[_OutputPump] = []
        self._stderr_pump: Optional[_OutputPump] = None

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self) -> None:
        if self.process is not None:
            raise DebugSessionError("gdb session already started")
        logger.debug("starting: %s", " ".join(self.command))
        try:
            self.process = subprocess.Popen(
                self.command,
                cwd=self.cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as exc:
            raise DebugSessionError(f"Could not start gdb '{self.command[0]}'. Cause: {exc}") from exc
        sink = self.output or sys.stdout
        assert self.process.stdout is not None and self.process.stderr is not None
        self._stderr_pump = _OutputPump(self.process.stderr, sink, MarkerScanner(self.ready_marker))
        self._pumps = [_OutputPump(self.process.stdout, sink), self._stderr_pump]
        for pump in self._pumps:
            pump.start()

    def wait_ready(self, timeout: float) -> None:
        """Block until the readiness marker appeared on stderr.

        The process is killed before :class:`ReadinessTimeout` or
        :class:`SessionExited` is raised.
        """
        if self.process is None or self._stderr_pump is None:
            raise DebugSessionError("gdb session not started")
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("Timeout while waiting for rtt connection.")
                self.kill()
                raise ReadinessTimeout("Timeout waiting for rtt connection to start.")
            if self._stderr_pump.ready.wait(min(0.05, remaining)):
                return
            if not self._stderr_pump.is_alive() and not self._stderr_pump.ready.is_set():
                code = self.process.poll()
                self.kill()
                raise SessionExited(f"gdb ended before the rtt connection was ready (exit code {code})")

    def wait(self, timeout: float) -> int:
        """Wait for GDB to finish and return its exit status."""
        if self.process is None:
            raise DebugSessionError("gdb session not started")
        try:
            code = self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            logger.error("gdb did not finish within %.1fs; killing it", timeout)
            self.kill()
            raise ExecutionTimeout(f"gdb did not finish within {timeout}s") from exc
        self._join_pumps()
        return code

    def kill(self) -> None:
        proc = self.process
        if proc is None:
            return
        if proc.poll() is None:
            logger.debug("killing gdb pid %s", proc.pid)
            proc.kill()
            try:
                proc.wait(timeout=5.0)
            except subprocess.TimeoutExpired:
                logger.warning("gdb pid %s did not exit after kill", proc.pid)
        self._join_pumps()

    def _join_pumps(self) -> None:
        for pump in self._pumps:
            if pump is not threading.current_thread():
                pump.join(timeout=1.0)
        for pipe in (self.process.stdout, self.process.stderr):
            if pipe is not None:
                pipe.close()
