"""Desktop notifications via libnotify."""

import logging

log = logging.getLogger(__name__)

APP_TITLE = "Send to CRM"


class DesktopNotifier:
    """Best-effort notification sink. Failures are logged, never raised."""

    def __init__(self, enabled: bool = True, icon: str = "camera-photo"):
        self.enabled = enabled
        self.icon = icon
        self._initialized = False

    def notify(self, title: str, body: str) -> None:
        if not self.enabled:
            log.debug("Notification suppressed: %s", title)
            return
        try:
            import gi
            gi.require_version("Notify", "0.7")
            from gi.repository import Notify
            if not self._initialized:
                Notify.init(APP_TITLE)
                self._initialized = True
            notification = Notify.Notification.new(title, body, self.icon)
            notification.set_urgency(Notify.Urgency.NORMAL)
            notification.show()
        except Exception as e:
            log.debug("Could not show notification: %s", e)
