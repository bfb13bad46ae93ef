"""Small always-on-top prompt surfaces: update, quota and pairing."""

import logging
from typing import Callable, Optional

import gi
gi.require_version("Gtk", "3.0")
gi.require_version("Gdk", "3.0")
gi.require_version("GtkLayerShell", "0.1")
from gi.repository import Gtk, Gdk, GLib, GtkLayerShell

from ..models import QuotaInfo, UpdatePhase, UpdateState, VerifyResult
from .text import SNOOZE_CHOICES, pairing_error, quota_action_label, quota_message, update_message

log = logging.getLogger(__name__)

MARGIN = 24


class PromptWindow(Gtk.Window):
    """Layer-shell bubble anchored to the bottom-right corner."""

    def __init__(self, title: str):
        super().__init__(title=title)
        GtkLayerShell.init_for_window(self)
        GtkLayerShell.set_layer(self, GtkLayerShell.Layer.TOP)
        GtkLayerShell.set_anchor(self, GtkLayerShell.Edge.BOTTOM, True)
        GtkLayerShell.set_anchor(self, GtkLayerShell.Edge.RIGHT, True)
        GtkLayerShell.set_margin(self, GtkLayerShell.Edge.BOTTOM, MARGIN)
        GtkLayerShell.set_margin(self, GtkLayerShell.Edge.RIGHT, MARGIN)
        GtkLayerShell.set_keyboard_mode(self, GtkLayerShell.KeyboardMode.ON_DEMAND)

        self.set_decorated(False)
        self.set_resizable(False)
        self.set_default_size(360, -1)

        self.box = Gtk.Box(orientation=Gtk.Orientation.VERTICAL, spacing=8)
        self.box.set_border_width(16)
        self.add(self.box)

        self.title_label = Gtk.Label(xalign=0)
        self.body_label = Gtk.Label(xalign=0)
        self.body_label.set_line_wrap(True)
        self.body_label.set_max_width_chars(44)
        self.box.pack_start(self.title_label, False, False, 0)
        self.box.pack_start(self.body_label, False, False, 0)

        self.buttons = Gtk.Box(orientation=Gtk.Orientation.HORIZONTAL, spacing=6)
        self.buttons.set_halign(Gtk.Align.END)
        self.box.pack_end(self.buttons, False, False, 0)

        self.connect("key-press-event", self._on_key_press)

    def set_text(self, title: str, body: str):
        self.title_label.set_markup(f"<b>{GLib.markup_escape_text(title)}</b>")
        self.body_label.set_text(body)

    def add_button(self, label: str, callback: Callable[[], None], suggested: bool = False) -> Gtk.Button:
        button = Gtk.Button(label=label)
        if suggested:
            button.get_style_context().add_class("suggested-action")
        button.connect("clicked", lambda _b: callback())
        self.buttons.pack_start(button, False, False, 0)
        return button

    def render(self, state):
        raise NotImplementedError

    def _on_key_press(self, widget, event):
        if event.keyval == Gdk.KEY_Escape:
            self.destroy()
            return True
        return False


class UpdatePrompt(PromptWindow):
    """Countdown with "Restart now" and snooze choices."""

    def __init__(self, on_restart: Callable[[], None], on_snooze: Callable[[float], None]):
        super().__init__("Update ready")
        self.add_button("Restart now", on_restart, suggested=True)
        self._snooze_buttons = [
            self.add_button(label, lambda m=minutes: on_snooze(m))
            for minutes, label in SNOOZE_CHOICES
        ]

    def render(self, state: UpdateState):
        self.set_text(*update_message(state))
        snoozable = state.phase in (UpdatePhase.COUNTING_DOWN, UpdatePhase.DEFERRED)
        for button in self._snooze_buttons:
            button.set_sensitive(snoozable)


class QuotaPrompt(PromptWindow):
    """Quota reached, with the server-provided upgrade action."""

    def __init__(self):
        super().__init__("Upload limit reached")
        self._info: Optional[QuotaInfo] = None
        self.action_button = self.add_button("Upgrade", self._open_action, suggested=True)
        # Shown by render only for actions we can perform
        self.action_button.set_no_show_all(True)
        self.add_button("Close", self.destroy)

    def render(self, info: QuotaInfo):
        self._info = info
        self.set_text("Upload limit reached", quota_message(info))
        label = quota_action_label(info)
        if label is None:
            log.info("Unsupported quota action %r", info.action.type)
            self.action_button.hide()
            return
        self.action_button.set_label(label)
        self.action_button.show()

    def _open_action(self):
        if self._info is None or quota_action_label(self._info) is None:
            return
        url = self._info.action.url
        try:
            Gtk.show_uri_on_window(None, url, Gdk.CURRENT_TIME)
        except GLib.Error as e:
            log.warning("Could not open %s: %s", url, e)
            return
        self.destroy()


class PairingPrompt(PromptWindow):
    """Token entry; submission is verified against the server before it is kept."""

    def __init__(self, on_submit: Callable[[str, Callable[[VerifyResult], None]], None]):
        super().__init__("Pair with your CRM")
        self._on_submit = on_submit
        GtkLayerShell.set_keyboard_mode(self, GtkLayerShell.KeyboardMode.EXCLUSIVE)

        self.entry = Gtk.Entry()
        self.entry.set_placeholder_text("Pairing code")
        self.entry.set_visibility(False)
        self.entry.connect("activate", lambda _e: self._submit())
        self.box.pack_start(self.entry, False, False, 0)

        self.error_label = Gtk.Label(xalign=0)
        self.error_label.set_line_wrap(True)
        self.box.pack_start(self.error_label, False, False, 0)

        self.pair_button = self.add_button("Pair", self._submit, suggested=True)
        self.add_button("Later", self.destroy)

    def render(self, _state=None):
        self.set_text(
            "Pair with your CRM",
            "Paste the pairing code from your CRM settings to start sending captures.",
        )

    def _submit(self):
        token = self.entry.get_text().strip()
        if not token:
            self.error_label.set_text("Enter a pairing code first.")
            return
        self.pair_button.set_sensitive(False)
        self.error_label.set_text("Checking...")
        self._on_submit(token, self._on_result)

    def _on_result(self, result: VerifyResult):
        if result.ok or not self.get_realized():
            return
        self.pair_button.set_sensitive(True)
        self.error_label.set_text(pairing_error(result.reason))
