"""Update lifecycle: check, download, count down, snooze, defer, install.

Deadlines are stored as epoch timestamps and evaluated by the pure helpers
below; the one-second tick only re-renders and fires the install when the
deadline has passed. Timers come from the injected scheduler, so the whole
state machine runs without a real clock in tests.

Phases and transitions:

    IDLE -> CHECKING -> AVAILABLE -> DOWNLOADING -> DOWNLOADED
    DOWNLOADED -> COUNTING_DOWN | SNOOZED
    COUNTING_DOWN -> INSTALLING | DEFERRED | SNOOZED
    DEFERRED -> INSTALLING (on session close) | SNOOZED
    SNOOZED -> DOWNLOADED (on expiry, followed by a re-check)
    any -> IDLE on check/download error
"""

import logging
import math
from dataclasses import replace
from pathlib import Path
from typing import Callable, Optional

from .config import Config, get_config
from .emit import emit
from .models import ReleaseInfo, UpdatePhase, UpdateState
from .session import SessionGate
from .settings import LAST_UPDATE_CHECK_AT, UPDATE_SNOOZED_UNTIL, SettingsStore
from .updater import is_packaged

log = logging.getLogger(__name__)

StateListener = Callable[[UpdateState], None]

# Phases from which a new check may start
_RESTING = (UpdatePhase.IDLE, UpdatePhase.DOWNLOADED, UpdatePhase.SNOOZED)
# Phases in which a downloaded build is waiting to be installed
_STAGED = (
    UpdatePhase.DOWNLOADED,
    UpdatePhase.COUNTING_DOWN,
    UpdatePhase.DEFERRED,
    UpdatePhase.SNOOZED,
)


def remaining_seconds(ends_at: float, now: float) -> int:
    """Whole seconds left until ``ends_at``, never negative."""
    return max(0, int(math.ceil(ends_at - now)))


def snooze_active(snoozed_until: Optional[float], now: float) -> bool:
    return bool(snoozed_until) and float(snoozed_until) > now


def check_due(last_check_at: Optional[float], now: float, min_gap_s: float) -> bool:
    return now - float(last_check_at or 0.0) >= min_gap_s


class UpdateLifecycleController:
    """Owns the process-wide update state.

    Args:
        feed: ReleaseFeed-like object with check(), download() and install()
        settings: settings store holding lastUpdateCheckAt/updateSnoozedUntil
        gate: capture session gate consulted before installing
        scheduler: timers and background execution
        notifier: notification sink
        quit_app: called right after the installer has been launched
        packaged: enables the periodic background check (auto-detected)
    """

    def __init__(
        self,
        feed,
        settings: SettingsStore,
        gate: SessionGate,
        scheduler,
        notifier,
        config: Optional[Config] = None,
        quit_app: Optional[Callable[[], None]] = None,
        packaged: Optional[bool] = None,
    ):
        self.feed = feed
        self.settings = settings
        self.gate = gate
        self.scheduler = scheduler
        self.notifier = notifier
        self.config = config or get_config()
        self.quit_app = quit_app
        self.packaged = is_packaged() if packaged is None else packaged

        self._state = UpdateState()
        self._listeners: list[StateListener] = []
        self._release: Optional[ReleaseInfo] = None
        self._staged_path: Optional[Path] = None
        self._staged_version: Optional[str] = None
        self._ends_at: Optional[float] = None
        self._countdown_timer: Optional[int] = None
        self._snooze_timer: Optional[int] = None
        self._background_timer: Optional[int] = None
        self._installed = False

        gate.add_close_listener(self.on_session_closed)

    # ── state ──────────────────────────────────────────────────

    @property
    def state(self) -> UpdateState:
        return self._state

    @property
    def install_delay_s(self) -> float:
        return self.config.install_delay_minutes * 60.0

    @property
    def min_check_gap_s(self) -> float:
        return self.config.min_check_gap_minutes * 60.0

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, state: UpdateState) -> None:
        previous = self._state.phase
        self._state = state
        if previous != state.phase:
            log.info("Update state: %s -> %s", previous.value, state.phase.value)
        emit("update.state", state.to_dict())
        for listener in list(self._listeners):
            listener(state)

    def _snoozed_until(self) -> float:
        return float(self.settings.get(UPDATE_SNOOZED_UNTIL) or 0.0)

    # ── scheduling ─────────────────────────────────────────────

    def start(self) -> None:
        """Begin background checking. Does nothing in development runs."""
        if not self.packaged:
            log.info("Auto-update disabled in development mode.")
            return

        now = self.scheduler.now()
        until = self._snoozed_until()
        if snooze_active(until, now):
            self._snooze_timer = self.scheduler.call_later(until - now, self._on_snooze_expired)

        self._arm_background_check()
        self.check()

    def _arm_background_check(self) -> None:
        interval_s = self.config.update_check_interval_hours * 3600.0
        self._background_timer = self.scheduler.call_every(interval_s, self.check)

    def stop(self) -> None:
        for attr in ("_countdown_timer", "_snooze_timer", "_background_timer"):
            self.scheduler.cancel(getattr(self, attr))
            setattr(self, attr, None)

    def _cancel_countdown(self) -> None:
        self.scheduler.cancel(self._countdown_timer)
        self._countdown_timer = None
        self._ends_at = None

    def _cancel_snooze_timer(self) -> None:
        self.scheduler.cancel(self._snooze_timer)
        self._snooze_timer = None

    # ── check / download ───────────────────────────────────────

    def check(self, force: bool = False, ignore_gap: bool = False) -> bool:
        """Start an update check if allowed.

        ``force`` (manual "check now") skips both the snooze and the
        minimum gap; ``ignore_gap`` skips only the gap.

        Returns:
            True if a check was started
        """
        phase = self._state.phase
        if phase not in _RESTING:
            log.debug("Update check skipped: %s", phase.value)
            return False

        now = self.scheduler.now()
        if not force and snooze_active(self._snoozed_until(), now):
            log.info("Update check skipped: snoozed")
            return False
        last = self.settings.get(LAST_UPDATE_CHECK_AT)
        if not (force or ignore_gap) and not check_due(last, now, self.min_check_gap_s):
            log.debug("Update check skipped: last check %.0fs ago", now - float(last or 0.0))
            return False

        self.settings.set(LAST_UPDATE_CHECK_AT, now)
        log.info("Checking for updates...")
        self._set_state(UpdateState(UpdatePhase.CHECKING, version=self._staged_version))
        self.scheduler.run_in_background(self.feed.check, self._on_check_done, self._on_error)
        return True

    def _on_check_done(self, release: Optional[ReleaseInfo]) -> None:
        if self._state.phase != UpdatePhase.CHECKING:
            return
        if release is None:
            self._release = None
            self._set_state(UpdateState(UpdatePhase.IDLE))
            return

        self._release = release
        version = release.version
        self._set_state(UpdateState(UpdatePhase.AVAILABLE, version=version))
        if version != self._staged_version:
            self.notifier.notify("Update available", f"Downloading version {version}")
        self._set_state(UpdateState(UpdatePhase.DOWNLOADING, version=version, percent=0.0))

        def _progress(percent: float) -> None:
            self.scheduler.call_soon(self._on_progress, version, percent)

        self.scheduler.run_in_background(
            lambda: self.feed.download(release, on_progress=_progress),
            self._on_downloaded,
            self._on_error,
        )

    def _on_progress(self, version: str, percent: float) -> None:
        state = self._state
        if state.phase != UpdatePhase.DOWNLOADING or state.version != version:
            return
        self._set_state(replace(state, percent=round(percent, 1)))

    def _on_downloaded(self, path: Path) -> None:
        if self._state.phase != UpdatePhase.DOWNLOADING or self._release is None:
            return
        version = self._release.version
        first_time = version != self._staged_version
        self._staged_path = path
        self._staged_version = version
        self._set_state(UpdateState(UpdatePhase.DOWNLOADED, version=version))
        if first_time:
            self.notifier.notify("Update ready", f"Version {version} is ready. Restart to apply.")

        now = self.scheduler.now()
        until = self._snoozed_until()
        if snooze_active(until, now):
            self._enter_snoozed(until)
            return
        if until:
            self.settings.set(UPDATE_SNOOZED_UNTIL, 0.0)
        self._start_countdown()

    def _on_error(self, exc: BaseException) -> None:
        self._cancel_countdown()
        log.error("Auto-update error: %s", exc)
        emit("error.handled", {"error_type": type(exc).__name__, "message": str(exc), "stage": "update"})
        self.notifier.notify("Update error", f"Update failed: {exc}")
        self._release = None
        self._set_state(UpdateState(UpdatePhase.IDLE))

    # ── countdown ──────────────────────────────────────────────

    def _start_countdown(self, delay_s: Optional[float] = None) -> None:
        self._cancel_snooze_timer()
        self._cancel_countdown()
        now = self.scheduler.now()
        self._ends_at = now + (self.install_delay_s if delay_s is None else delay_s)
        self._render_countdown(now)
        self._countdown_timer = self.scheduler.call_every(1, self._tick)

    def _render_countdown(self, now: float) -> int:
        remaining = remaining_seconds(self._ends_at, now)
        self._set_state(UpdateState(
            UpdatePhase.COUNTING_DOWN,
            version=self._staged_version,
            ends_at=self._ends_at,
            remaining_seconds=remaining,
        ))
        return remaining

    def _tick(self) -> None:
        if self._state.phase != UpdatePhase.COUNTING_DOWN or self._ends_at is None:
            self._cancel_countdown()
            return
        if self._render_countdown(self.scheduler.now()) > 0:
            return

        self._cancel_countdown()
        if self.gate.is_open():
            self._set_state(UpdateState(UpdatePhase.DEFERRED, version=self._staged_version))
            self.notifier.notify(
                "Restart pending",
                "Send to CRM will restart to update as soon as you finish your capture.",
            )
            return
        self._install()

    # ── snooze ─────────────────────────────────────────────────

    def snooze(self, minutes: float) -> bool:
        """Postpone the restart. Cancels any running countdown.

        Returns:
            False if there is no downloaded update to postpone
        """
        if self._state.phase not in _STAGED:
            log.debug("Nothing to snooze in %s", self._state.phase.value)
            return False
        until = self.scheduler.now() + minutes * 60.0
        self.settings.set(UPDATE_SNOOZED_UNTIL, until)
        log.info("Update restart snoozed for %s minutes", minutes)
        self._enter_snoozed(until)
        return True

    def _enter_snoozed(self, until: float) -> None:
        self._cancel_countdown()
        self._cancel_snooze_timer()
        self._set_state(UpdateState(
            UpdatePhase.SNOOZED,
            version=self._staged_version,
            snoozed_until=until,
        ))
        delay = max(0.0, until - self.scheduler.now())
        self._snooze_timer = self.scheduler.call_later(delay, self._on_snooze_expired)

    def _on_snooze_expired(self) -> None:
        self._snooze_timer = None
        now = self.scheduler.now()
        until = self._snoozed_until()
        if snooze_active(until, now):
            self._snooze_timer = self.scheduler.call_later(until - now, self._on_snooze_expired)
            return

        self.settings.set(UPDATE_SNOOZED_UNTIL, 0.0)
        if self._state.phase == UpdatePhase.SNOOZED:
            self._set_state(UpdateState(UpdatePhase.DOWNLOADED, version=self._staged_version))
        if self._state.phase in (UpdatePhase.DOWNLOADED, UpdatePhase.IDLE):
            self.check(ignore_gap=True)

    # ── install ────────────────────────────────────────────────

    def on_session_closed(self) -> None:
        if self._state.phase == UpdatePhase.DEFERRED:
            log.info("Capture finished, installing deferred update")
            self._install()

    def install_now(self) -> bool:
        """Restart immediately, or as soon as the open capture session ends."""
        if self._state.phase not in _STAGED:
            return False
        if self._snoozed_until():
            self.settings.set(UPDATE_SNOOZED_UNTIL, 0.0)
        if self.gate.is_open():
            # A countdown that has already run out; the tick defers it
            if self._state.phase != UpdatePhase.DEFERRED:
                self._start_countdown(delay_s=0.0)
                self._tick()
            return True
        self._cancel_countdown()
        self._cancel_snooze_timer()
        self._install()
        return True

    def _install(self) -> None:
        if self._installed or self._staged_path is None:
            return
        self._installed = True
        self.stop()
        self._set_state(UpdateState(UpdatePhase.INSTALLING, version=self._staged_version))
        try:
            self.feed.install(self._staged_path)
        except Exception as e:
            self._installed = False
            self._on_error(e)
            if self.packaged:
                self._arm_background_check()
            return
        if self.quit_app is not None:
            self.quit_app()
