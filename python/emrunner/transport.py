"""TCP connection to the RTT server exposed by the debug session.

OpenOCD only starts accepting connections on the RTT port after the GDB
script issued ``monitor rtt server start``, so the first attempts are
normally refused.  Refused and timed-out attempts are retried until the setup
budget is spent; any other socket error is fatal.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Optional

from .errors import RunnerError

logger = logging.getLogger(__name__)

DEFAULT_RTT_PORT = 19021


class TransportError(RunnerError):
    """Raised when the RTT stream cannot be opened or read."""


class ConnectTimeout(TransportError):
    pass


@dataclass
class TransportConfig:
    host: str = "127.0.0.1"
    port: int = DEFAULT_RTT_PORT
    connect_timeout: float = 1.0
    read_timeout: float = 0.5
    retry_interval: float = 0.05


def connect(config: TransportConfig, timeout: float) -> socket.socket:
    """Open the RTT stream, retrying for at most ``timeout`` seconds."""
    deadline = time.monotonic() + timeout
    attempt = 0
    last_error: Optional[OSError] = None
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        attempt += 1
        try:
            sock = socket.create_connection(
                (config.host, config.port),
                timeout=min(config.connect_timeout, remaining),
            )
        except (ConnectionRefusedError, socket.timeout) as exc:
            last_error = exc
            time.sleep(min(config.retry_interval, max(0.0, deadline - time.monotonic())))
            continue
        except OSError as exc:
            raise TransportError(
                f"TCP connection error on {config.host}:{config.port}: {exc}"
            ) from exc
        sock.settimeout(config.read_timeout)
        logger.debug("rtt stream connected after %d attempt(s)", attempt)
        return sock
    raise ConnectTimeout(
        f"Timeout connecting to rtt server on {config.host}:{config.port} after {attempt} attempt(s)"
        + (f": {last_error}" if last_error else "")
    )
