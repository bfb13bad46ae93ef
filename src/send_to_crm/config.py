"""Configuration management for Send to CRM.

Configuration priority (highest to lowest):
1. CLI overrides (passed to load_config)
2. Environment variables (SEND_TO_CRM_<KEY>)
3. Config file (~/.config/send-to-crm/config.yaml)
4. Built-in defaults (the Config dataclass)

This covers deployment knobs only. Per-user state (auth token, snooze,
last update check) lives in the settings store, see settings.py.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Any

import yaml
from platformdirs import user_config_dir, user_cache_dir, user_pictures_dir

APP_NAME = "send-to-crm"
ENV_PREFIX = "SEND_TO_CRM"
CONFIG_DIR = Path(user_config_dir(APP_NAME))
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.yaml"

DEFAULT_API_BASE_URL = "https://app.sendtocrm.com/api"
DEFAULT_BILLING_URL = "https://app.sendtocrm.com/billing"
DEFAULT_UPDATE_FEED_URL = "https://github.com/Ben-445/auto-crm/releases/latest/download/latest.json"


@dataclass
class Config:
    """Send to CRM configuration."""

    # Endpoints
    api_base_url: str = DEFAULT_API_BASE_URL
    billing_url: str = DEFAULT_BILLING_URL
    update_feed_url: str = DEFAULT_UPDATE_FEED_URL

    # Screen grab helper binary
    wayland_capture: str = "wayland-capture"

    # Local copies are off unless asked for
    save_screenshots_local: bool = False
    local_screenshot_dir: Path = field(
        default_factory=lambda: Path(user_pictures_dir()) / "Send to CRM"
    )

    # Behavior
    enable_notification: bool = True
    install_delay_minutes: int = 5
    min_check_gap_minutes: int = 30
    update_check_interval_hours: int = 24

    # Network
    upload_timeout_s: float = 20.0
    connect_timeout_s: float = 12.0

    # Paths
    cache_dir: Path = field(default_factory=lambda: Path(user_cache_dir(APP_NAME)))
    settings_file: Path = field(default_factory=lambda: CONFIG_DIR / "settings.json")
    lock_file: Path = field(default_factory=lambda: Path("/tmp/send-to-crm.lock"))
    autostart_file: Path = field(
        default_factory=lambda: Path(user_config_dir()) / "autostart" / f"{APP_NAME}.desktop"
    )

    def __post_init__(self):
        for key in PATH_KEYS:
            value = getattr(self, key)
            if isinstance(value, str):
                setattr(self, key, Path(value))


PATH_KEYS = frozenset({
    "local_screenshot_dir",
    "cache_dir",
    "settings_file",
    "lock_file",
    "autostart_file",
})

# JSON-schema rule per key; validation and env parsing both read this table
RULES: dict[str, dict] = {
    "api_base_url": {"type": "string", "format": "uri"},
    "billing_url": {"type": "string", "format": "uri"},
    "update_feed_url": {"type": "string", "format": "uri"},
    "wayland_capture": {"type": "string"},
    "save_screenshots_local": {"type": "boolean"},
    "local_screenshot_dir": {"type": "string"},
    "enable_notification": {"type": "boolean"},
    "install_delay_minutes": {"type": "integer", "minimum": 0},
    "min_check_gap_minutes": {"type": "integer", "minimum": 0},
    "update_check_interval_hours": {"type": "integer", "minimum": 1},
    "upload_timeout_s": {"type": "number", "exclusiveMinimum": 0},
    "connect_timeout_s": {"type": "number", "exclusiveMinimum": 0},
    "cache_dir": {"type": "string"},
    "settings_file": {"type": "string"},
    "lock_file": {"type": "string"},
    "autostart_file": {"type": "string"},
}


def _env(name: str) -> Optional[str]:
    return os.environ.get(f"{ENV_PREFIX}_{name}")


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("true", "1", "yes", "on")


def _expand_path(value: Any) -> Any:
    if value is None:
        return value
    return str(Path(value).expanduser())


def _config_path_from_env() -> Optional[Path]:
    value = _env("CONFIG") or _env("CONFIG_PATH")
    return Path(value).expanduser() if value else None


def _read_yaml(path: Path, strict: bool = False) -> dict:
    """Mapping stored at ``path``; {} when absent or, unless strict, unusable."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        if strict:
            raise ValueError(f"Failed to parse config file {path}: {exc}") from exc
        return {}

    if data is None:
        return {}
    if not isinstance(data, dict):
        if strict:
            raise ValueError(f"Config file {path} must be a mapping")
        return {}
    return data


def config_to_dict(config: Config) -> dict:
    """JSON-friendly view of ``config``: paths become strings."""
    data = {}
    for f in fields(config):
        value = getattr(config, f.name)
        data[f.name] = str(value) if isinstance(value, Path) else value
    return data


def config_defaults() -> dict:
    return config_to_dict(Config())


def config_schema() -> dict:
    return {
        "$schema": "https://json-schema.org/draft/2020-12/schema",
        "type": "object",
        "properties": {key: dict(rule) for key, rule in RULES.items()},
        "additionalProperties": False,
    }


def _parse_env_value(key: str, raw: str) -> Any:
    kind = RULES[key]["type"]
    if kind == "integer":
        return int(raw)
    if kind == "number":
        return float(raw)
    if kind == "boolean":
        return _truthy(raw)
    return _expand_path(raw) if key in PATH_KEYS else raw


def _load_env_overrides() -> dict:
    found: dict[str, Any] = {}
    for key in RULES:
        raw = _env(key.upper())
        if raw is None:
            continue
        try:
            found[key] = _parse_env_value(key, raw)
        except ValueError:
            # Unparseable numbers fall back to the file/default value
            continue

    # Toggle name used by earlier releases
    legacy = os.environ.get("SAVE_SCREENSHOTS_LOCAL")
    if legacy is not None and "save_screenshots_local" not in found:
        found["save_screenshots_local"] = legacy.strip() == "1"
    return found


def resolve_config_path(config_path: Optional[Path] = None) -> Path:
    return config_path or _config_path_from_env() or DEFAULT_CONFIG_PATH


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict] = None,
    strict: bool = False,
) -> Config:
    """Merge defaults, file, environment and ``overrides`` into a Config.

    ``None`` values in ``overrides`` are ignored so argparse namespaces can
    be passed through unfiltered.
    """
    merged = config_defaults()
    merged.update(_read_yaml(resolve_config_path(config_path), strict=strict))
    merged.update(_load_env_overrides())
    merged.update({k: v for k, v in (overrides or {}).items() if v is not None})

    for key in PATH_KEYS & merged.keys():
        merged[key] = _expand_path(merged[key])

    return Config(**merged)


_config: Optional[Config] = None


def get_config() -> Config:
    """Process-wide configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_value(key: str, value: Any, rule: dict) -> Optional[str]:
    kind = rule["type"]
    if kind == "string":
        if not isinstance(value, str):
            return f"{key} must be a string"
        if rule.get("format") == "uri" and not value.startswith(("http://", "https://")):
            return f"{key} must be an http(s) URL"
    elif kind == "boolean":
        if not isinstance(value, bool):
            return f"{key} must be a boolean"
    elif kind == "integer":
        if not _is_int(value):
            return f"{key} must be an integer"
        if value < rule["minimum"]:
            return f"{key} must be >= {rule['minimum']}"
    elif kind == "number":
        if not _is_number(value):
            return f"{key} must be a number"
        if value <= rule["exclusiveMinimum"]:
            return f"{key} must be > {rule['exclusiveMinimum']}"
    return None


def validate_config_dict(data: Any) -> list[str]:
    if not isinstance(data, dict):
        return ["Config must be a mapping/object"]

    errors = [f"Unknown config key: {key}" for key in data if key not in RULES]
    for key, value in data.items():
        if key in RULES:
            problem = _check_value(key, value, RULES[key])
            if problem:
                errors.append(problem)
    return errors


def validate_config_file(config_path: Optional[Path] = None) -> list[str]:
    """Problems found in the config file; raises ValueError if it won't parse."""
    return validate_config_dict(_read_yaml(resolve_config_path(config_path), strict=True))
