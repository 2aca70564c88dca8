"""One-shot cancellation token shared between the orchestrator and decode thread."""

from __future__ import annotations

import threading


class CancelToken:
    """Set-once, read-many cancellation signal.

    The orchestrator calls :meth:`cancel` exactly once after the debugger has
    exited; the decode loop polls :attr:`cancelled` between reads.  The token
    can never be cleared.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
