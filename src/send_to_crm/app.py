"""Background process: wires capture, delivery and updates to the main loop."""

import logging
import os
import signal
from typing import Callable, Optional

from .autostart import apply_start_on_login
from .config import APP_NAME, Config
from .delivery import DeliveryCoordinator
from .emit import emit
from .errors import CaptureError, CaptureSourceUnavailable, PermissionDenied
from .instance import SIGNAL_CAPTURE, SIGNAL_CHECK_UPDATES, SIGNAL_RELOAD
from .models import (
    PROMPT_PAIRING,
    PROMPT_UPDATE,
    CaptureBounds,
    CaptureResult,
    UpdatePhase,
    UpdateState,
)
from .notify import DesktopNotifier
from .session import CaptureSession, SessionGate
from .settings import SettingsStore, settings_defaults
from .update import UpdateLifecycleController
from .updater import ReleaseFeed
from .upload import UploadClient

log = logging.getLogger(__name__)

# Lets the compositor unmap the overlay before the screen is grabbed
OVERLAY_SETTLE_S = 0.15
QUIT_POLL_S = 0.5
QUIT_GRACE_S = 30.0

PROMPT_PHASES = (UpdatePhase.COUNTING_DOWN, UpdatePhase.DEFERRED, UpdatePhase.INSTALLING)


class SendToCrmApp:
    """Owns every long-lived component of the background process.

    ``ui`` must provide primary_display(), show_selection_overlay() and the
    prompt-surface methods used by DeliveryCoordinator.
    """

    def __init__(
        self,
        config: Config,
        ui,
        scheduler,
        settings: Optional[SettingsStore] = None,
        notifier=None,
        capturer=None,
        client: Optional[UploadClient] = None,
        feed=None,
        quit_app: Optional[Callable[[], None]] = None,
        packaged: Optional[bool] = None,
    ):
        self.config = config
        self.ui = ui
        self.scheduler = scheduler
        self.settings = settings or SettingsStore(
            config.settings_file, settings_defaults(config.api_base_url)
        )
        self.notifier = notifier or DesktopNotifier(enabled=config.enable_notification)
        if capturer is None:
            from .capture import RegionCapturer
            capturer = RegionCapturer(config)
        self.capturer = capturer
        self._quit_app = quit_app

        self.gate = SessionGate()
        self.coordinator = DeliveryCoordinator(
            client or UploadClient(
                config.billing_url,
                timeout_s=config.upload_timeout_s,
                connect_timeout_s=config.connect_timeout_s,
            ),
            self.settings,
            self.notifier,
            ui,
            scheduler,
            config,
        )
        self.controller = UpdateLifecycleController(
            feed or ReleaseFeed(config),
            self.settings,
            self.gate,
            scheduler,
            self.notifier,
            config,
            quit_app=self.request_quit,
            packaged=packaged,
        )
        self.controller.subscribe(self.present_update_state)

        self.session: Optional[CaptureSession] = None
        self._prompt_phase: Optional[UpdatePhase] = None
        self._quit_waited = 0.0

    def start(self) -> None:
        apply_start_on_login(self.settings, self.config)
        self.controller.start()
        if not self.settings.auth_token:
            log.info("Not paired yet, asking for a pairing code")
            self.ui.show_prompt_surface(PROMPT_PAIRING, None)

    def stop(self) -> None:
        self.controller.stop()

    def reload_settings(self) -> None:
        self.settings.reload()
        if self.settings.auth_token:
            log.info("Pairing updated by another invocation")
            self.ui.close_prompt_surface(PROMPT_PAIRING)

    # ── capture ────────────────────────────────────────────────

    def start_capture(self) -> bool:
        """Open the selection overlay. Ignored while a capture is in progress."""
        if self.session is not None and not self.session.resolved:
            log.debug("Capture already in progress")
            return False

        display_bounds, scale_factor = self.ui.primary_display()
        session = CaptureSession(self.gate)
        self.session = session

        def _selected(selection: Optional[CaptureBounds]) -> None:
            self._on_selection(session, display_bounds, scale_factor, selection)

        if not self.ui.show_selection_overlay(display_bounds, _selected):
            session.cancel()
            return False
        return True

    def _on_selection(
        self,
        session: CaptureSession,
        display_bounds: CaptureBounds,
        scale_factor: float,
        selection: Optional[CaptureBounds],
    ) -> None:
        if selection is None:
            log.info("Capture cancelled")
            session.cancel()
            return
        self.scheduler.call_later(
            OVERLAY_SETTLE_S, self._grab, session, display_bounds, scale_factor, selection
        )

    def _grab(
        self,
        session: CaptureSession,
        display_bounds: CaptureBounds,
        scale_factor: float,
        selection: CaptureBounds,
    ) -> None:
        self.scheduler.run_in_background(
            lambda: self.capturer.capture(display_bounds, selection, scale_factor),
            lambda result: self._on_captured(session, result, scale_factor),
            lambda exc: self._on_capture_failed(session, exc),
        )

    def _on_captured(self, session: CaptureSession, result: CaptureResult, scale_factor: float) -> None:
        emit("capture.completed", {
            "width": result.bounds.width,
            "height": result.bounds.height,
            "scale_factor": scale_factor,
            "bytes": len(result.png_bytes),
        })
        # Upload must be in flight before the gate closes and releases an install
        session.submit(result, handoff=self.coordinator.deliver)

    def _on_capture_failed(self, session: CaptureSession, exc: BaseException) -> None:
        session.cancel()
        emit("error.handled", {"error_type": type(exc).__name__, "message": str(exc), "stage": "capture"})
        if isinstance(exc, PermissionDenied):
            log.warning("Capture blocked: %s", exc)
            self.notifier.notify(
                "Screen recording not allowed",
                "Allow screen recording for Send to CRM in your system settings, then try again.",
            )
        elif isinstance(exc, CaptureSourceUnavailable):
            log.warning("Capture abandoned: %s", exc)
            self.notifier.notify("Capture failed", "Couldn't find the screen to capture.")
        elif isinstance(exc, (CaptureError, ValueError)):
            log.error("Capture failed: %s", exc)
            self.notifier.notify("Capture failed", "Couldn't capture the selected area. Please try again.")
        else:
            log.error("Unexpected capture error: %s", exc, exc_info=exc)
            self.notifier.notify("Capture failed", "Couldn't capture the selected area. Please try again.")

    # ── updates ────────────────────────────────────────────────

    def check_for_updates(self) -> bool:
        return self.controller.check(force=True)

    def present_update_state(self, state: UpdateState) -> None:
        """Push update state to the update prompt.

        The prompt opens once per phase it is relevant to; if the user
        dismisses it, ticks within the same phase do not reopen it.
        """
        if state.phase not in PROMPT_PHASES:
            self._prompt_phase = None
            self.ui.close_prompt_surface(PROMPT_UPDATE)
            return
        if state.phase != self._prompt_phase:
            self._prompt_phase = state.phase
            self.ui.show_prompt_surface(PROMPT_UPDATE, state)
        elif self.ui.is_prompt_open(PROMPT_UPDATE):
            self.ui.update_prompt_surface(PROMPT_UPDATE, state)

    def request_quit(self) -> None:
        """Quit once in-flight uploads have finished, or after a grace period."""
        if self.coordinator.in_flight and self._quit_waited < QUIT_GRACE_S:
            log.info("Waiting for %d upload(s) before quitting", self.coordinator.in_flight)
            self._quit_waited += QUIT_POLL_S
            self.scheduler.call_later(QUIT_POLL_S, self.request_quit)
            return
        if self._quit_app is not None:
            self._quit_app()


def run_app(config: Config) -> int:
    """Run the background process until quit. Caller holds the instance lock."""
    # Set app_id for Wayland (must be done before GTK init)
    os.environ["GDK_BACKEND"] = "wayland"

    import gi
    gi.require_version("Gtk", "3.0")
    from gi.repository import GLib, Gtk

    from .loop import GLibScheduler
    from .ui.host import GtkUiHost

    GLib.set_prgname(APP_NAME)
    GLib.set_application_name("Send to CRM")

    ui = GtkUiHost()
    app = SendToCrmApp(config, ui, GLibScheduler(), quit_app=Gtk.main_quit)
    ui.bind(app.controller, app.coordinator)

    def _on_signal(action):
        action()
        return GLib.SOURCE_CONTINUE

    GLib.unix_signal_add(GLib.PRIORITY_HIGH, SIGNAL_CAPTURE, _on_signal, app.start_capture)
    GLib.unix_signal_add(GLib.PRIORITY_HIGH, SIGNAL_CHECK_UPDATES, _on_signal, app.check_for_updates)
    GLib.unix_signal_add(GLib.PRIORITY_HIGH, SIGNAL_RELOAD, _on_signal, app.reload_settings)
    for signum in (signal.SIGINT, signal.SIGTERM):
        GLib.unix_signal_add(GLib.PRIORITY_HIGH, signum, _on_signal, Gtk.main_quit)

    app.start()
    log.info("Send to CRM running; send SIGUSR1 (or run with --capture) to capture")
    try:
        Gtk.main()
    finally:
        app.stop()
    return 0
