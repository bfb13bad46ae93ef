"""Capture-selection session tracking.

SessionGate answers one question for the updater: is the user in the middle
of selecting a region right now? A pending restart waits for the answer to
become "no".
"""

import logging
from typing import Callable, Optional

from .models import CaptureResult

log = logging.getLogger(__name__)


class SessionGate:
    """Open while a selection overlay is on screen."""

    def __init__(self):
        self._open = False
        self._close_listeners: list[Callable[[], None]] = []

    def is_open(self) -> bool:
        return self._open

    def add_close_listener(self, listener: Callable[[], None]) -> None:
        self._close_listeners.append(listener)

    def open(self) -> None:
        if not self._open:
            log.debug("Capture session opened")
        self._open = True

    def close(self) -> None:
        """Mark the session closed and notify listeners before returning.

        Closing an already-closed gate does nothing.
        """
        if not self._open:
            return
        self._open = False
        log.debug("Capture session closed")
        for listener in list(self._close_listeners):
            listener()


class SessionAlreadyResolved(RuntimeError):
    """Raised when a capture session is submitted, cancelled or read twice."""


class CaptureSession:
    """One selection overlay from appearance to dismissal.

    Holds the gate open for its lifetime and hands its CaptureResult to
    exactly one consumer.
    """

    def __init__(self, gate: SessionGate):
        self._gate = gate
        self._result: Optional[CaptureResult] = None
        self._resolved = False
        self._cancelled = False
        self._taken = False
        gate.open()

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def submit(
        self,
        result: CaptureResult,
        handoff: Optional[Callable[[CaptureResult], None]] = None,
    ) -> None:
        """Resolve the session with ``result`` and close the gate.

        ``handoff`` consumes the result before the gate closes, so close
        listeners (a deferred install) already see it as in flight.
        """
        if self._resolved:
            raise SessionAlreadyResolved("capture session already resolved")
        self._result = result
        self._resolved = True
        try:
            if handoff is not None:
                handoff(self.take_result())
        finally:
            self._gate.close()

    def cancel(self) -> None:
        if self._resolved:
            return
        self._resolved = True
        self._cancelled = True
        self._gate.close()

    def take_result(self) -> CaptureResult:
        if self._taken:
            raise SessionAlreadyResolved("capture result already consumed")
        if self._result is None:
            raise SessionAlreadyResolved("capture session has no result")
        self._taken = True
        result = self._result
        self._result = None
        return result
