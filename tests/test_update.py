# -*- coding: utf-8 -*-
"""Tests for the update lifecycle state machine."""

from __future__ import annotations

import pytest

from send_to_crm.models import UpdatePhase, UpdateState
from send_to_crm.session import SessionGate
from send_to_crm.settings import LAST_UPDATE_CHECK_AT, UPDATE_SNOOZED_UNTIL
from send_to_crm.update import (
    UpdateLifecycleController,
    check_due,
    remaining_seconds,
    snooze_active,
)
from send_to_crm.updater import DownloadFailed, UpdateCheckFailed

from conftest import START_TIME


@pytest.fixture
def quits() -> list[bool]:
    return []


@pytest.fixture
def gate() -> SessionGate:
    return SessionGate()


@pytest.fixture
def states() -> list[UpdateState]:
    return []


@pytest.fixture
def controller(fake_feed, settings, gate, scheduler, notifier, config, quits, states):
    controller = UpdateLifecycleController(
        fake_feed,
        settings,
        gate,
        scheduler,
        notifier,
        config,
        quit_app=lambda: quits.append(True),
        packaged=True,
    )
    controller.subscribe(states.append)
    return controller


def _phases(states: list[UpdateState]) -> list[UpdatePhase]:
    phases: list[UpdatePhase] = []
    for state in states:
        if not phases or phases[-1] != state.phase:
            phases.append(state.phase)
    return phases


# ── pure helpers ───────────────────────────────────────────────

def test_remaining_seconds_rounds_up_and_floors_at_zero() -> None:
    assert remaining_seconds(100.2, 100.0) == 1
    assert remaining_seconds(400.0, 100.0) == 300
    assert remaining_seconds(100.0, 101.0) == 0


def test_snooze_active() -> None:
    assert snooze_active(200.0, 100.0)
    assert not snooze_active(100.0, 100.0)
    assert not snooze_active(None, 100.0)
    assert not snooze_active(0.0, 100.0)


def test_check_due() -> None:
    assert check_due(None, 100.0, 60.0)
    assert not check_due(50.0, 100.0, 60.0)
    assert check_due(40.0, 100.0, 60.0)


# ── checking and downloading ───────────────────────────────────

def test_start_does_nothing_in_development(fake_feed, settings, gate, scheduler, notifier, config) -> None:
    controller = UpdateLifecycleController(
        fake_feed, settings, gate, scheduler, notifier, config, packaged=False
    )

    controller.start()

    assert fake_feed.check_calls == 0
    assert scheduler.pending == 0
    assert controller.state.phase == UpdatePhase.IDLE


def test_available_update_downloads_and_counts_down(controller, fake_feed, notifier, states, settings) -> None:
    controller.start()

    assert _phases(states) == [
        UpdatePhase.CHECKING,
        UpdatePhase.AVAILABLE,
        UpdatePhase.DOWNLOADING,
        UpdatePhase.DOWNLOADED,
        UpdatePhase.COUNTING_DOWN,
    ]
    assert [s.percent for s in states if s.phase == UpdatePhase.DOWNLOADING] == [0.0, 50.0, 100.0]
    assert controller.state.remaining_seconds == 300
    assert controller.state.version == "9.9.0"
    assert notifier.titles == ["Update available", "Update ready"]
    assert settings.get(LAST_UPDATE_CHECK_AT) == START_TIME


def test_no_update_returns_to_idle(controller, fake_feed) -> None:
    fake_feed.release = None

    controller.start()

    assert controller.state.phase == UpdatePhase.IDLE
    assert fake_feed.download_calls == 0


def test_checks_respect_minimum_gap(controller, fake_feed, scheduler) -> None:
    fake_feed.release = None
    controller.start()

    assert not controller.check()
    scheduler.advance(29 * 60)
    assert not controller.check()
    scheduler.advance(60)
    assert controller.check()
    assert fake_feed.check_calls == 2


def test_forced_check_skips_gap(controller, fake_feed) -> None:
    fake_feed.release = None
    controller.start()

    assert controller.check(force=True)
    assert fake_feed.check_calls == 2


def test_background_check_runs_every_interval(controller, fake_feed, scheduler) -> None:
    fake_feed.release = None
    controller.start()

    scheduler.advance(24 * 3600)

    assert fake_feed.check_calls == 2


def test_check_failure_returns_to_idle(controller, fake_feed, notifier, events) -> None:
    fake_feed.check_error = UpdateCheckFailed("feed unreachable")

    controller.start()

    assert controller.state.phase == UpdatePhase.IDLE
    assert "Update error" in notifier.titles
    assert any(e["event_type"] == "error.handled" for e in events)


def test_download_failure_returns_to_idle(controller, fake_feed, scheduler) -> None:
    fake_feed.download_error = DownloadFailed("checksum mismatch")

    controller.start()
    scheduler.advance(600)

    assert controller.state.phase == UpdatePhase.IDLE
    assert fake_feed.installs == []


# ── countdown and install ──────────────────────────────────────

def test_countdown_ticks_once_per_second(controller, scheduler, states) -> None:
    controller.start()
    states.clear()

    scheduler.advance(3)

    assert [s.remaining_seconds for s in states] == [299, 298, 297]


def test_countdown_installs_when_no_session_is_open(controller, fake_feed, scheduler, quits) -> None:
    controller.start()

    scheduler.advance(299)
    assert fake_feed.installs == []

    scheduler.advance(1)
    assert fake_feed.installs == [fake_feed.path]
    assert quits == [True]
    assert controller.state.phase == UpdatePhase.INSTALLING
    assert scheduler.pending == 0


def test_open_session_defers_until_close(controller, fake_feed, gate, scheduler, notifier, quits) -> None:
    controller.start()
    gate.open()

    scheduler.advance(300)
    assert controller.state.phase == UpdatePhase.DEFERRED
    assert "Restart pending" in notifier.titles

    scheduler.advance(3600)
    assert fake_feed.installs == []

    gate.close()
    assert fake_feed.installs == [fake_feed.path]
    assert quits == [True]

    gate.open()
    gate.close()
    assert fake_feed.installs == [fake_feed.path]


def test_install_now_defers_while_session_open(controller, fake_feed, gate) -> None:
    controller.start()
    gate.open()

    assert controller.install_now()
    assert controller.state.phase == UpdatePhase.DEFERRED
    assert fake_feed.installs == []

    gate.close()
    assert fake_feed.installs == [fake_feed.path]


def test_install_now_from_snooze_defers_through_expired_countdown(
    controller, fake_feed, gate, settings, states
) -> None:
    controller.start()
    controller.snooze(60)
    gate.open()
    states.clear()

    assert controller.install_now()

    assert _phases(states) == [UpdatePhase.COUNTING_DOWN, UpdatePhase.DEFERRED]
    assert states[0].remaining_seconds == 0
    assert not settings.get(UPDATE_SNOOZED_UNTIL)
    assert fake_feed.installs == []

    gate.close()
    assert fake_feed.installs == [fake_feed.path]


def test_install_now_without_session(controller, fake_feed, quits) -> None:
    controller.start()

    assert controller.install_now()
    assert fake_feed.installs == [fake_feed.path]
    assert quits == [True]


def test_install_now_with_nothing_downloaded(controller, fake_feed) -> None:
    fake_feed.release = None
    controller.start()

    assert not controller.install_now()


def test_install_failure_returns_to_idle_and_rearms(controller, fake_feed, scheduler, quits) -> None:
    fake_feed.install_error = OSError("Exec format error")
    controller.start()

    scheduler.advance(300)

    assert controller.state.phase == UpdatePhase.IDLE
    assert quits == []
    assert scheduler.pending == 1


# ── snooze ─────────────────────────────────────────────────────

def test_snooze_cancels_countdown(controller, fake_feed, scheduler, settings, states) -> None:
    controller.start()
    scheduler.advance(10)

    assert controller.snooze(15)

    assert controller.state.phase == UpdatePhase.SNOOZED
    assert controller.state.snoozed_until == START_TIME + 10 + 15 * 60
    assert settings.get(UPDATE_SNOOZED_UNTIL) == START_TIME + 10 + 15 * 60

    states.clear()
    scheduler.advance(60)
    assert states == []
    assert fake_feed.installs == []


def test_snooze_expiry_rechecks_and_restarts_countdown(controller, fake_feed, scheduler, notifier) -> None:
    controller.start()
    scheduler.advance(10)
    controller.snooze(15)

    scheduler.advance(16 * 60)

    assert controller.state.phase == UpdatePhase.COUNTING_DOWN
    assert controller.state.remaining_seconds == 240
    assert fake_feed.check_calls == 2
    assert fake_feed.installs == []
    assert notifier.titles.count("Update available") == 1
    assert notifier.titles.count("Update ready") == 1


def test_snooze_from_deferred_survives_session_close(controller, fake_feed, gate, scheduler) -> None:
    controller.start()
    gate.open()
    scheduler.advance(300)
    assert controller.state.phase == UpdatePhase.DEFERRED

    controller.snooze(60)
    gate.close()

    assert controller.state.phase == UpdatePhase.SNOOZED
    assert fake_feed.installs == []


def test_snooze_without_update_is_ignored(controller, fake_feed) -> None:
    fake_feed.release = None
    controller.start()

    assert not controller.snooze(15)
    assert controller.state.phase == UpdatePhase.IDLE


def test_persisted_snooze_blocks_startup_check(controller, fake_feed, settings, scheduler) -> None:
    settings.set(UPDATE_SNOOZED_UNTIL, START_TIME + 600)

    controller.start()
    assert fake_feed.check_calls == 0

    scheduler.advance(600)
    assert fake_feed.check_calls == 1
    assert controller.state.phase == UpdatePhase.COUNTING_DOWN
    assert settings.get(UPDATE_SNOOZED_UNTIL) == 0.0


def test_forced_check_ignores_snooze(controller, fake_feed, settings) -> None:
    settings.set(UPDATE_SNOOZED_UNTIL, START_TIME + 600)
    controller.start()

    assert controller.check(force=True)
    assert fake_feed.check_calls == 1
    assert controller.state.phase == UpdatePhase.SNOOZED
