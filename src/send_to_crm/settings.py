"""Durable per-user settings.

A small JSON key-value store loaded once at startup. Unknown keys on disk are
kept so that older and newer builds can share one file.
"""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from .config import DEFAULT_API_BASE_URL

log = logging.getLogger(__name__)

DEFAULT_SHORTCUT = "Control+Shift+S"

AUTH_TOKEN = "authToken"
API_BASE_URL = "apiBaseUrl"
SHORTCUT = "shortcut"
START_ON_LOGIN = "startOnLogin"
START_ON_LOGIN_USER_SET = "startOnLoginUserSet"
LAST_UPDATE_CHECK_AT = "lastUpdateCheckAt"
UPDATE_SNOOZED_UNTIL = "updateSnoozedUntil"


def settings_defaults(api_base_url: str = DEFAULT_API_BASE_URL) -> dict:
    return {
        AUTH_TOKEN: "",
        API_BASE_URL: api_base_url,
        SHORTCUT: DEFAULT_SHORTCUT,
        START_ON_LOGIN: True,
        START_ON_LOGIN_USER_SET: False,
        LAST_UPDATE_CHECK_AT: 0.0,
        UPDATE_SNOOZED_UNTIL: 0.0,
    }


class SettingsStore:
    """JSON-file backed settings with defaults.

    Every ``set`` is written through to disk. All writers run on the main
    loop so no locking is needed.
    """

    def __init__(self, path: Optional[Path], defaults: Optional[dict] = None):
        self.path = path
        self._data = dict(defaults if defaults is not None else settings_defaults())
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Could not read settings %s, using defaults: %s", self.path, e)
            return
        if not isinstance(data, dict):
            log.warning("Settings file %s is not an object, ignoring", self.path)
            return
        self._data.update(data)

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._data, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def reload(self) -> None:
        """Pick up changes written by another process."""
        self._load()

    def set(self, key: str, value: Any) -> None:
        # Keep keys written by other invocations since our last load
        self._load()
        self._data[key] = value
        self._save()

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def auth_token(self) -> str:
        return str(self.get(AUTH_TOKEN) or "").strip()

    def clear_auth_token(self) -> None:
        self.set(AUTH_TOKEN, "")
