"""
Pytest configuration and fixtures for emrunner tests.
"""
import socket
import threading
from pathlib import Path

import pytest

from emrunner.config import EMBEDDED_DIR_NAME, Platform, ResolvedConfig, RunnerConfig

POSIX = Platform(name="posix", sleep_command="sleep")


class DummyRttServer:
    """Accepts one RTT client and sends it a canned byte stream."""

    def __init__(self, payload: bytes = b"", *, keep_open: bool = False) -> None:
        self.payload = payload
        self.keep_open = keep_open
        self._sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._sock.bind(("127.0.0.1", 0))
        self.port = self._sock.getsockname()[1]
        self._sock.listen(1)
        self._stop = threading.Event()
        self.accepted = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            conn, _ = self._sock.accept()
        except OSError:
            return
        self.accepted.set()
        with conn:
            try:
                conn.sendall(self.payload)
            except OSError:
                return
            if self.keep_open:
                self._stop.wait(10.0)

    def close(self) -> None:
        self._stop.set()
        self._sock.close()
        self._thread.join(timeout=2.0)


@pytest.fixture
def rtt_server():
    servers = []

    def _start(payload: bytes = b"", *, keep_open: bool = False) -> DummyRttServer:
        server = DummyRttServer(payload, keep_open=keep_open)
        servers.append(server)
        return server

    yield _start
    for server in servers:
        server.close()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    (tmp_path / EMBEDDED_DIR_NAME).mkdir()
    return tmp_path


@pytest.fixture
def resolved_cfg(workspace: Path) -> ResolvedConfig:
    return ResolvedConfig(
        runner_cfg=RunnerConfig(),
        workspace_dir=workspace,
        embedded_dir=workspace / EMBEDDED_DIR_NAME,
        platform=POSIX,
    )
