"""Main-loop scheduling.

All state transitions run on one thread: the GLib main loop. Blocking work
(HTTP upload, token verification, update check and download) runs on a worker
thread and hands its result back with GLib.idle_add, so callbacks never race
each other.

Components take a Scheduler instead of touching GLib directly; tests swap in
an in-memory implementation with a manual clock.
"""

import logging
import threading
import time
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

Callback = Callable[..., Any]


class Scheduler:
    """Timer and background-work contract used by the core components."""

    def now(self) -> float:
        """Current wall-clock time in epoch seconds."""
        raise NotImplementedError

    def call_later(self, seconds: float, fn: Callback, *args) -> int:
        """Run ``fn`` once after ``seconds``. Returns a handle for cancel()."""
        raise NotImplementedError

    def call_every(self, seconds: float, fn: Callback, *args) -> int:
        """Run ``fn`` every ``seconds`` until cancelled."""
        raise NotImplementedError

    def call_soon(self, fn: Callback, *args) -> None:
        """Run ``fn`` on the main loop. Safe to call from any thread."""
        raise NotImplementedError

    def cancel(self, handle: Optional[int]) -> None:
        """Cancel a timer. Unknown or already-fired handles are ignored."""
        raise NotImplementedError

    def run_in_background(
        self,
        work: Callable[[], Any],
        on_done: Callable[[Any], None],
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        """Run ``work`` off the main loop, then deliver its result on the loop."""
        raise NotImplementedError


class GLibScheduler(Scheduler):
    """Scheduler backed by the default GLib main context."""

    def __init__(self):
        import gi
        gi.require_version("GLib", "2.0")
        from gi.repository import GLib
        self._glib = GLib
        self._sources: set[int] = set()

    def now(self) -> float:
        return time.time()

    def call_later(self, seconds: float, fn: Callback, *args) -> int:
        source_id: int = 0

        def _fire():
            self._sources.discard(source_id)
            fn(*args)
            return False

        source_id = self._glib.timeout_add(max(0, int(seconds * 1000)), _fire)
        self._sources.add(source_id)
        return source_id

    def call_every(self, seconds: float, fn: Callback, *args) -> int:
        def _tick():
            fn(*args)
            return True

        if seconds >= 1 and float(seconds).is_integer():
            source_id = self._glib.timeout_add_seconds(int(seconds), _tick)
        else:
            source_id = self._glib.timeout_add(int(seconds * 1000), _tick)
        self._sources.add(source_id)
        return source_id

    def call_soon(self, fn: Callback, *args) -> None:
        def _idle():
            fn(*args)
            return False

        self._glib.idle_add(_idle)

    def cancel(self, handle: Optional[int]) -> None:
        if handle is None or handle not in self._sources:
            return
        self._sources.discard(handle)
        self._glib.source_remove(handle)

    def run_in_background(
        self,
        work: Callable[[], Any],
        on_done: Callable[[Any], None],
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        def _worker():
            try:
                result = work()
            except Exception as e:
                if on_error is None:
                    log.error("Background task failed: %s", e)
                    return
                self.call_soon(on_error, e)
                return
            self.call_soon(on_done, result)

        threading.Thread(target=_worker, daemon=True).start()
