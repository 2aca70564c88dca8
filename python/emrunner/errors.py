"""Root of the emrunner error taxonomy."""

from __future__ import annotations


class RunnerError(RuntimeError):
    """Raised for any fatal condition that aborts a runner command.

    Each subsystem derives its own error classes from this one so the CLI can
    report every failure through a single handler.
    """
