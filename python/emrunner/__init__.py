"""
emrunner package.

Runs firmware on an attached embedded target through GDB and OpenOCD,
captures the defmt log stream sent over RTT, and turns test output into
requirement coverage.  Use ``emrunner run <binary>`` or ``python -m
emrunner``.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .cli import main

__all__ = ["main"]
