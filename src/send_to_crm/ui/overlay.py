"""Full-screen region selection overlay."""

import logging
from typing import Callable, Optional

import cairo
import gi
gi.require_version("Gtk", "3.0")
gi.require_version("Gdk", "3.0")
gi.require_version("GtkLayerShell", "0.1")
from gi.repository import Gtk, Gdk, GtkLayerShell

from ..geometry import drag_rect, selection_on_display
from ..models import CaptureBounds
from .drawing import (
    draw_dim,
    draw_dimension_text,
    draw_instructions,
    draw_selection_overlay,
)

log = logging.getLogger(__name__)

SelectionCallback = Callable[[Optional[CaptureBounds]], None]

# Drags smaller than this (logical px) on either axis are treated as clicks
DRAG_THRESHOLD = 5

_EDGES = (
    GtkLayerShell.Edge.TOP,
    GtkLayerShell.Edge.BOTTOM,
    GtkLayerShell.Edge.LEFT,
    GtkLayerShell.Edge.RIGHT,
)


class SelectionOverlay(Gtk.Window):
    """Translucent layer-shell surface over the primary monitor.

    Calls ``on_done`` exactly once: with the selected rectangle in logical
    display coordinates, or with None when the user cancels.
    """

    def __init__(self, display_bounds: CaptureBounds, on_done: SelectionCallback):
        super().__init__(title="Send to CRM")
        self.display_bounds = display_bounds
        self._on_done = on_done
        self._finished = False
        self._anchor: Optional[tuple[float, float]] = None
        self._pointer = (0.0, 0.0)

        self._setup_surface()

        self.canvas = Gtk.DrawingArea()
        self.canvas.set_events(
            Gdk.EventMask.BUTTON_PRESS_MASK
            | Gdk.EventMask.BUTTON_RELEASE_MASK
            | Gdk.EventMask.POINTER_MOTION_MASK
        )
        for signal_name, handler in (
            ("draw", self._on_draw),
            ("button-press-event", self._on_press),
            ("button-release-event", self._on_release),
            ("motion-notify-event", self._on_motion),
        ):
            self.canvas.connect(signal_name, handler)
        self.connect("key-press-event", self._on_key)
        self.add(self.canvas)

        self.canvas.set_can_focus(True)
        self.canvas.grab_focus()
        self.show_all()
        self._use_crosshair()

    def _setup_surface(self):
        GtkLayerShell.init_for_window(self)
        GtkLayerShell.set_layer(self, GtkLayerShell.Layer.OVERLAY)
        for edge in _EDGES:
            GtkLayerShell.set_anchor(self, edge, True)
        GtkLayerShell.set_exclusive_zone(self, -1)
        GtkLayerShell.set_keyboard_mode(self, GtkLayerShell.KeyboardMode.EXCLUSIVE)

        visual = self.get_screen().get_rgba_visual()
        if visual is not None:
            self.set_visual(visual)
        self.set_app_paintable(True)
        self.set_decorated(False)
        self.set_skip_taskbar_hint(True)
        self.set_skip_pager_hint(True)

    def _use_crosshair(self):
        gdk_window = self.get_window()
        if gdk_window is not None:
            cursor = Gdk.Cursor.new_for_display(gdk_window.get_display(), Gdk.CursorType.CROSSHAIR)
            gdk_window.set_cursor(cursor)

    @property
    def dragging(self) -> bool:
        return self._anchor is not None

    def _on_draw(self, widget, cr):
        cr.set_operator(cairo.OPERATOR_SOURCE)
        cr.set_source_rgba(0, 0, 0, 0)
        cr.paint()
        cr.set_operator(cairo.OPERATOR_OVER)

        width = widget.get_allocated_width()
        height = widget.get_allocated_height()
        if not self.dragging:
            draw_dim(cr, width, height)
            draw_instructions(cr)
            return False

        x, y, w, h = drag_rect(self._anchor, self._pointer)
        draw_selection_overlay(cr, x, y, w, h, width, height)
        draw_dimension_text(cr, x, y, w, h)
        return False

    def _on_press(self, widget, event):
        if event.button == 3:
            self._finish(None)
        elif event.button == 1:
            self._anchor = self._pointer = (event.x, event.y)
            widget.queue_draw()
        return True

    def _on_release(self, widget, event):
        if event.button == 1 and self.dragging:
            self._pointer = (event.x, event.y)
            self._submit()
        return True

    def _on_motion(self, widget, event):
        self._pointer = (event.x, event.y)
        if self.dragging:
            widget.queue_draw()
        return True

    def _on_key(self, widget, event):
        if event.keyval == Gdk.KEY_Escape:
            self._finish(None)
            return True
        if event.keyval in (Gdk.KEY_Return, Gdk.KEY_KP_Enter) and self.dragging:
            self._submit()
            return True
        return False

    def _submit(self):
        rect = drag_rect(self._anchor, self._pointer)
        self._anchor = None
        _, _, w, h = rect
        if w < DRAG_THRESHOLD or h < DRAG_THRESHOLD:
            log.debug("Ignoring %dx%d drag", w, h)
            self.canvas.queue_draw()
            return
        # None if the drag ended up entirely off the monitor
        self._finish(selection_on_display(rect, self.display_bounds))

    def _finish(self, selection: Optional[CaptureBounds]):
        if self._finished:
            return
        self._finished = True
        self.hide()
        self.destroy()
        self._on_done(selection)
