# -*- coding: utf-8 -*-
"""Shared pytest fixtures: manual clock and scheduler, recording fakes."""

from __future__ import annotations

import base64
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import pytest


SRC_DIR = Path(__file__).resolve().parents[1] / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from send_to_crm import emit as emit_module  # noqa: E402
from send_to_crm.config import Config  # noqa: E402
from send_to_crm.loop import Scheduler  # noqa: E402
from send_to_crm.models import CaptureBounds, CaptureResult, ReleaseInfo  # noqa: E402
from send_to_crm.settings import SettingsStore, settings_defaults  # noqa: E402


PNG_1X1_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mP8/x8AAwMCAO7+fJ8AAAAASUVORK5CYII="
)

START_TIME = 1_700_000_000.0

_MISSING = object()


class ManualScheduler(Scheduler):
    """In-memory scheduler driven by advance(). Background work runs inline."""

    def __init__(self, start: float = START_TIME):
        self.clock = start
        self._timers: dict[int, list] = {}
        self._next_handle = 1
        self.background_calls = 0

    def now(self) -> float:
        return self.clock

    def _add(self, seconds: float, interval: Optional[float], fn: Callable, args: tuple) -> int:
        handle = self._next_handle
        self._next_handle += 1
        self._timers[handle] = [self.clock + seconds, interval, fn, args]
        return handle

    def call_later(self, seconds: float, fn: Callable, *args) -> int:
        return self._add(seconds, None, fn, args)

    def call_every(self, seconds: float, fn: Callable, *args) -> int:
        return self._add(seconds, seconds, fn, args)

    def call_soon(self, fn: Callable, *args) -> None:
        fn(*args)

    def cancel(self, handle: Optional[int]) -> None:
        if handle is not None:
            self._timers.pop(handle, None)

    def run_in_background(self, work, on_done, on_error=None) -> None:
        self.background_calls += 1
        try:
            result = work()
        except Exception as e:
            if on_error is None:
                raise
            on_error(e)
            return
        on_done(result)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.clock + seconds
        while True:
            due = [(timer[0], handle) for handle, timer in self._timers.items() if timer[0] <= target]
            if not due:
                break
            when, handle = min(due)
            timer = self._timers[handle]
            self.clock = max(self.clock, when)
            if timer[1] is None:
                del self._timers[handle]
            else:
                timer[0] = when + timer[1]
            timer[2](*timer[3])
        self.clock = target

    @property
    def pending(self) -> int:
        return len(self._timers)


class RecordingNotifier:
    def __init__(self):
        self.notifications: list[tuple[str, str]] = []

    def notify(self, title: str, body: str) -> None:
        self.notifications.append((title, body))

    @property
    def titles(self) -> list[str]:
        return [title for title, _ in self.notifications]


class FakeUiHost:
    """Records prompt traffic; the selection overlay is completed by select()."""

    def __init__(self, display: CaptureBounds = CaptureBounds(0, 0, 1920, 1080), scale: float = 1.0):
        self.display = display
        self.scale = scale
        self.open: dict[str, Any] = {}
        self.shown: list[tuple[str, Any]] = []
        self.updated: list[tuple[str, Any]] = []
        self.closed: list[str] = []
        self.overlay_calls = 0
        self._overlay_callback: Optional[Callable] = None

    def primary_display(self):
        return self.display, self.scale

    def show_selection_overlay(self, display_bounds, on_done) -> bool:
        if self._overlay_callback is not None:
            return False
        self.overlay_calls += 1
        self._overlay_callback = on_done
        return True

    def select(self, selection: Optional[CaptureBounds]) -> None:
        callback, self._overlay_callback = self._overlay_callback, None
        callback(selection)

    def is_prompt_open(self, kind: str) -> bool:
        return kind in self.open

    def show_prompt_surface(self, kind: str, state=None) -> None:
        self.open[kind] = state
        self.shown.append((kind, state))

    def update_prompt_surface(self, kind: str, state=None) -> None:
        if kind in self.open:
            self.open[kind] = state
            self.updated.append((kind, state))

    def close_prompt_surface(self, kind: str) -> None:
        if self.open.pop(kind, _MISSING) is not _MISSING:
            self.closed.append(kind)


class FakeFeed:
    """ReleaseFeed stand-in with scripted results."""

    def __init__(self, release: Optional[ReleaseInfo] = None, path: Path = Path("/tmp/send-to-crm-update")):
        self.release = release
        self.path = path
        self.check_error: Optional[Exception] = None
        self.download_error: Optional[Exception] = None
        self.install_error: Optional[Exception] = None
        self.check_calls = 0
        self.download_calls = 0
        self.installs: list[Path] = []

    def check(self) -> Optional[ReleaseInfo]:
        self.check_calls += 1
        if self.check_error is not None:
            raise self.check_error
        return self.release

    def download(self, release: ReleaseInfo, on_progress=None) -> Path:
        self.download_calls += 1
        if self.download_error is not None:
            raise self.download_error
        if on_progress is not None:
            on_progress(50.0)
            on_progress(100.0)
        return self.path

    def install(self, path: Path) -> None:
        if self.install_error is not None:
            raise self.install_error
        self.installs.append(path)


@pytest.fixture(autouse=True)
def quiet_events():
    """Keep JSON events off stderr and drop handlers between tests."""
    emit_module.configure("tests", stderr=False)
    yield
    emit_module.clear_handlers()


@pytest.fixture
def events() -> list[dict]:
    recorded: list[dict] = []
    emit_module.add_handler(recorded.append)
    return recorded


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ui() -> FakeUiHost:
    return FakeUiHost()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        api_base_url="https://crm.test/api",
        billing_url="https://crm.test/billing",
        update_feed_url="https://updates.test/latest.json",
        local_screenshot_dir=tmp_path / "shots",
        cache_dir=tmp_path / "cache",
        settings_file=tmp_path / "settings.json",
        lock_file=tmp_path / "send-to-crm.lock",
        autostart_file=tmp_path / "autostart" / "send-to-crm.desktop",
    )


@pytest.fixture
def settings(config: Config) -> SettingsStore:
    return SettingsStore(config.settings_file, settings_defaults(config.api_base_url))


@pytest.fixture
def release() -> ReleaseInfo:
    return ReleaseInfo(version="9.9.0", download_url="https://updates.test/send-to-crm-9.9.0.AppImage")


@pytest.fixture
def fake_feed(release: ReleaseInfo, tmp_path: Path) -> FakeFeed:
    return FakeFeed(release=release, path=tmp_path / "send-to-crm-9.9.0.AppImage")


@pytest.fixture
def capture_result() -> CaptureResult:
    return CaptureResult(png_bytes=PNG_1X1_BYTES, bounds=CaptureBounds(10, 20, 1, 1))
