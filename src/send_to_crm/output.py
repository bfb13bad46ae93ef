"""Opt-in local copies of captures.

Captures are uploaded from memory and never touch disk unless
``save_screenshots_local`` is enabled.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import Config, get_config
from .models import CaptureResult

log = logging.getLogger(__name__)


def local_path_for(result: CaptureResult, directory: Path) -> Path:
    timestamp_ms = int(result.captured_at.timestamp() * 1000)
    return directory / f"screenshot_{timestamp_ms}.png"


def persist_local(result: CaptureResult, config: Optional[Config] = None) -> Optional[Path]:
    """Write the capture to the local screenshot directory if enabled.

    Returns:
        Path written, or None when disabled or the write failed
    """
    config = config or get_config()
    if not config.save_screenshots_local:
        return None

    path = local_path_for(result, config.local_screenshot_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(result.png_bytes)
    except OSError as e:
        log.warning("Could not save local screenshot %s: %s", path, e)
        return None

    log.info("Screenshot saved: %s", path)
    return path
