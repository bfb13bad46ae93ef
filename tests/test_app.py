# -*- coding: utf-8 -*-
"""Tests for the capture flow and update prompt wiring of the background app."""

from __future__ import annotations

import httpx
import pytest

from send_to_crm.app import OVERLAY_SETTLE_S, SendToCrmApp
from send_to_crm.errors import CaptureSourceUnavailable, PermissionDenied
from send_to_crm.models import (
    PROMPT_PAIRING,
    PROMPT_UPDATE,
    CaptureBounds,
    CaptureResult,
    UpdatePhase,
)
from send_to_crm.settings import AUTH_TOKEN, START_ON_LOGIN, START_ON_LOGIN_USER_SET
from send_to_crm.upload import UploadClient

from conftest import PNG_1X1_BYTES


class FakeCapturer:
    def __init__(self):
        self.calls: list[tuple] = []
        self.error: Exception | None = None

    def capture(self, display_bounds, selection, scale_factor) -> CaptureResult:
        self.calls.append((display_bounds, selection, scale_factor))
        if self.error is not None:
            raise self.error
        return CaptureResult(png_bytes=PNG_1X1_BYTES, bounds=selection)


@pytest.fixture
def capturer() -> FakeCapturer:
    return FakeCapturer()


@pytest.fixture
def uploads() -> list[httpx.Request]:
    return []


@pytest.fixture
def app(config, ui, scheduler, settings, notifier, capturer, fake_feed, uploads) -> SendToCrmApp:
    def handler(request: httpx.Request) -> httpx.Response:
        uploads.append(request)
        return httpx.Response(200, json={"id": "cap_1"})

    client = UploadClient(config.billing_url, transport=httpx.MockTransport(handler))
    return SendToCrmApp(
        config,
        ui,
        scheduler,
        settings=settings,
        notifier=notifier,
        capturer=capturer,
        client=client,
        feed=fake_feed,
        packaged=False,
    )


def test_start_prompts_for_pairing_when_unpaired(app, ui) -> None:
    app.start()

    assert ui.is_prompt_open(PROMPT_PAIRING)


def test_start_skips_pairing_prompt_when_paired(app, ui, settings) -> None:
    settings.set(AUTH_TOKEN, "tok-1")

    app.start()

    assert ui.shown == []


def test_capture_flow_uploads_selection(app, ui, scheduler, settings, capturer, uploads, notifier, events) -> None:
    settings.set(AUTH_TOKEN, "tok-1")
    selection = CaptureBounds(100, 100, 200, 150)

    assert app.start_capture()
    assert app.gate.is_open()
    ui.select(selection)
    assert capturer.calls == []

    scheduler.advance(OVERLAY_SETTLE_S)

    assert capturer.calls == [(ui.display, selection, 1.0)]
    assert not app.gate.is_open()
    assert len(uploads) == 1
    assert notifier.titles == ["Sent to CRM"]
    assert any(e["event_type"] == "capture.completed" for e in events)


def test_second_capture_ignored_while_overlay_is_open(app, ui) -> None:
    assert app.start_capture()
    assert not app.start_capture()
    assert ui.overlay_calls == 1


def test_cancelled_selection_closes_session(app, ui, scheduler, capturer) -> None:
    app.start_capture()

    ui.select(None)
    scheduler.advance(1)

    assert not app.gate.is_open()
    assert app.session.cancelled
    assert capturer.calls == []
    assert app.start_capture()


@pytest.mark.parametrize(
    "error,title",
    [
        (PermissionDenied("denied"), "Screen recording not allowed"),
        (CaptureSourceUnavailable("no match"), "Capture failed"),
        (ValueError("outside display"), "Capture failed"),
    ],
)
def test_capture_errors_notify_and_close_session(app, ui, scheduler, capturer, notifier, uploads, error, title) -> None:
    capturer.error = error
    app.start_capture()
    ui.select(CaptureBounds(0, 0, 10, 10))

    scheduler.advance(OVERLAY_SETTLE_S)

    assert notifier.titles == [title]
    assert not app.gate.is_open()
    assert uploads == []


def test_update_prompt_follows_countdown(config, ui, scheduler, settings, notifier, capturer, fake_feed) -> None:
    settings.set(AUTH_TOKEN, "tok-1")
    app = SendToCrmApp(
        config, ui, scheduler,
        settings=settings, notifier=notifier, capturer=capturer, feed=fake_feed, packaged=True,
    )

    app.start()
    assert ui.open[PROMPT_UPDATE].phase == UpdatePhase.COUNTING_DOWN

    scheduler.advance(2)
    assert ui.open[PROMPT_UPDATE].remaining_seconds == 298

    app.controller.snooze(15)
    assert not ui.is_prompt_open(PROMPT_UPDATE)


def test_dismissed_update_prompt_stays_closed_within_phase(config, ui, scheduler, settings, notifier, capturer, fake_feed) -> None:
    settings.set(AUTH_TOKEN, "tok-1")
    app = SendToCrmApp(
        config, ui, scheduler,
        settings=settings, notifier=notifier, capturer=capturer, feed=fake_feed, packaged=True,
    )
    app.start()

    ui.close_prompt_surface(PROMPT_UPDATE)
    scheduler.advance(5)

    assert not ui.is_prompt_open(PROMPT_UPDATE)


def test_deferred_install_waits_for_capture_to_finish(
    config, ui, scheduler, settings, notifier, capturer, fake_feed
) -> None:
    quits = []
    settings.set(AUTH_TOKEN, "tok-1")
    app = SendToCrmApp(
        config, ui, scheduler,
        settings=settings, notifier=notifier, capturer=capturer, feed=fake_feed,
        quit_app=lambda: quits.append(True), packaged=True,
    )
    app.start()
    app.start_capture()

    scheduler.advance(300)
    assert app.controller.state.phase == UpdatePhase.DEFERRED
    assert fake_feed.installs == []

    ui.select(None)

    assert fake_feed.installs == [fake_feed.path]
    assert quits == [True]


def test_quit_waits_for_in_flight_uploads(app, scheduler) -> None:
    quits = []
    app._quit_app = lambda: quits.append(True)
    app.coordinator.in_flight = 1

    app.request_quit()
    assert quits == []

    app.coordinator.in_flight = 0
    scheduler.advance(1)
    assert quits == [True]


def test_reload_settings_closes_pairing_prompt(app, ui, config) -> None:
    app.start()
    config.settings_file.write_text('{"authToken": "tok-from-cli"}', encoding="utf-8")

    app.reload_settings()

    assert app.settings.auth_token == "tok-from-cli"
    assert not ui.is_prompt_open(PROMPT_PAIRING)


def test_capture_finished_while_deferred_is_uploaded_before_quit(
    config, ui, scheduler, settings, notifier, capturer, fake_feed
) -> None:
    order: list = []
    settings.set(AUTH_TOKEN, "tok-1")

    def handler(request: httpx.Request) -> httpx.Response:
        order.append("upload")
        return httpx.Response(200, json={"id": "cap_1"})

    app = SendToCrmApp(
        config, ui, scheduler,
        settings=settings, notifier=notifier, capturer=capturer, feed=fake_feed,
        client=UploadClient(config.billing_url, transport=httpx.MockTransport(handler)),
        quit_app=lambda: order.append("quit"), packaged=True,
    )
    app.start()
    app.start_capture()
    scheduler.advance(300)
    assert app.controller.state.phase == UpdatePhase.DEFERRED

    ui.select(CaptureBounds(10, 10, 50, 40))
    scheduler.advance(OVERLAY_SETTLE_S)

    assert fake_feed.installs == [fake_feed.path]
    assert order == ["upload", "quit"]


def test_deferred_install_quit_sees_upload_in_flight(
    config, ui, scheduler, settings, notifier, capturer, fake_feed
) -> None:
    seen_in_flight: list[int] = []
    settings.set(AUTH_TOKEN, "tok-1")
    app = SendToCrmApp(
        config, ui, scheduler,
        settings=settings, notifier=notifier, capturer=capturer, feed=fake_feed,
        quit_app=lambda: seen_in_flight.append(app.coordinator.in_flight), packaged=True,
    )
    held: list = []

    def deliver_later(result) -> None:
        app.coordinator.in_flight += 1
        held.append(result)

    app.coordinator.deliver = deliver_later
    app.start()
    app.start_capture()
    scheduler.advance(300)

    ui.select(CaptureBounds(10, 10, 50, 40))
    scheduler.advance(OVERLAY_SETTLE_S)

    assert len(held) == 1
    assert seen_in_flight == []

    app.coordinator.in_flight -= 1
    scheduler.advance(1)
    assert seen_in_flight == [0]


def test_start_registers_start_on_login_entry(app, config) -> None:
    app.start()

    assert "[Desktop Entry]" in config.autostart_file.read_text(encoding="utf-8")


def test_start_respects_start_on_login_turned_off(app, config, settings) -> None:
    settings.set(START_ON_LOGIN, False)
    settings.set(START_ON_LOGIN_USER_SET, True)
    config.autostart_file.parent.mkdir(parents=True)
    config.autostart_file.write_text("[Desktop Entry]\n", encoding="utf-8")

    app.start()

    assert not config.autostart_file.exists()
