"""GTK implementation of the UI host used by the delivery and update code."""

import logging
from typing import Callable, Optional

import gi
gi.require_version("Gtk", "3.0")
gi.require_version("Gdk", "3.0")
from gi.repository import Gdk

from ..models import PROMPT_PAIRING, PROMPT_QUOTA, PROMPT_UPDATE, CaptureBounds
from .overlay import SelectionCallback, SelectionOverlay
from .prompts import PairingPrompt, PromptWindow, QuotaPrompt, UpdatePrompt

log = logging.getLogger(__name__)


class GtkUiHost:
    """Keeps at most one window per prompt kind.

    ``bind()`` supplies the actions the prompt buttons trigger; it is called
    once the controller and coordinator exist.
    """

    def __init__(self):
        self._prompts: dict[str, PromptWindow] = {}
        self._overlay: Optional[SelectionOverlay] = None
        self._factories: dict[str, Callable[[], PromptWindow]] = {}

    def bind(self, controller, coordinator) -> None:
        self._factories = {
            PROMPT_UPDATE: lambda: UpdatePrompt(controller.install_now, controller.snooze),
            PROMPT_QUOTA: QuotaPrompt,
            PROMPT_PAIRING: lambda: PairingPrompt(coordinator.pair),
        }

    # ── display ────────────────────────────────────────────────

    def primary_display(self) -> tuple[CaptureBounds, float]:
        """Logical bounds and scale factor of the monitor captures target."""
        display = Gdk.Display.get_default()
        monitor = display.get_primary_monitor() or display.get_monitor(0)
        geometry = monitor.get_geometry()
        bounds = CaptureBounds(geometry.x, geometry.y, geometry.width, geometry.height)
        return bounds, float(monitor.get_scale_factor())

    def show_selection_overlay(self, display_bounds: CaptureBounds, on_done: SelectionCallback) -> bool:
        """Open the selection overlay unless one is already up."""
        if self._overlay is not None:
            log.debug("Selection overlay already open")
            return False

        def _done(selection: Optional[CaptureBounds]) -> None:
            self._overlay = None
            on_done(selection)

        self._overlay = SelectionOverlay(display_bounds, _done)
        return True

    # ── prompts ────────────────────────────────────────────────

    def is_prompt_open(self, kind: str) -> bool:
        return kind in self._prompts

    def show_prompt_surface(self, kind: str, state=None) -> None:
        window = self._prompts.get(kind)
        if window is None:
            factory = self._factories.get(kind)
            if factory is None:
                raise KeyError(f"Unknown prompt kind: {kind}")
            window = factory()
            window.connect("destroy", lambda _w, k=kind: self._prompts.pop(k, None))
            self._prompts[kind] = window
            log.debug("Opened %s prompt", kind)
        window.render(state)
        window.show_all()
        window.present()

    def update_prompt_surface(self, kind: str, state=None) -> None:
        window = self._prompts.get(kind)
        if window is not None:
            window.render(state)

    def close_prompt_surface(self, kind: str) -> None:
        window = self._prompts.pop(kind, None)
        if window is not None:
            window.destroy()
            log.debug("Closed %s prompt", kind)
