"""Start on login through an XDG autostart entry.

Desktop sessions launch every ``~/.config/autostart/*.desktop`` entry at
login. The entry exists exactly when the ``startOnLogin`` setting is on;
that setting defaults to on until the user changes it once.
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from .config import APP_NAME, Config
from .settings import START_ON_LOGIN, START_ON_LOGIN_USER_SET, SettingsStore

log = logging.getLogger(__name__)

DESKTOP_ENTRY = """\
[Desktop Entry]
Type=Application
Name=Send to CRM
Comment=Capture a screen region and upload it to your CRM
Exec={exec}
Icon=camera-photo
Terminal=false
X-GNOME-Autostart-enabled=true
"""


def launch_command() -> str:
    """Command the session should run: the AppImage if we are one."""
    appimage = os.environ.get("APPIMAGE")
    if appimage:
        return appimage
    return shutil.which(APP_NAME) or APP_NAME


def desktop_entry(command: str) -> str:
    return DESKTOP_ENTRY.format(exec=command)


def set_autostart(path: Path, enabled: bool, command: Optional[str] = None) -> bool:
    """Create or remove the entry at ``path``.

    Returns:
        False if the file could not be written or removed
    """
    try:
        if not enabled:
            if path.exists():
                path.unlink()
                log.info("Start on login disabled")
            return True

        content = desktop_entry(command or launch_command())
        if path.exists() and path.read_text(encoding="utf-8") == content:
            return True
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        log.info("Start on login enabled (%s)", path)
        return True
    except OSError as e:
        log.warning("Could not update autostart entry %s: %s", path, e)
        return False


def apply_start_on_login(settings: SettingsStore, config: Config, command: Optional[str] = None) -> bool:
    """Bring the autostart entry in line with the stored preference.

    Returns:
        The preference that was applied
    """
    if not settings.get(START_ON_LOGIN_USER_SET):
        settings.set(START_ON_LOGIN, True)
    enabled = bool(settings.get(START_ON_LOGIN))
    set_autostart(config.autostart_file, enabled, command)
    return enabled


def choose_start_on_login(
    settings: SettingsStore, config: Config, enabled: bool, command: Optional[str] = None
) -> bool:
    """Record an explicit user choice and apply it."""
    settings.set(START_ON_LOGIN, enabled)
    settings.set(START_ON_LOGIN_USER_SET, True)
    return set_autostart(config.autostart_file, enabled, command)
