"""
Structured events for Send to CRM.

Every capture, upload, update-state change and handled error is published as
one event. The default sink writes single-line JSON to stderr, where journald
picks it up next to the log lines; tests and embedders attach handlers to
receive the same dicts in-process.

    {"event_type": "upload.completed", "timestamp": "...",
     "source": {"tool": "send-to-crm"}, "data": {"outcome": "success", ...}}

The catalog below is printed by ``--print-event-catalog``.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict], None]

EVENT_CATALOG = [
    {
        "event_type": "config.resolved",
        "data_fields": ["config_path", "source"],
    },
    {
        "event_type": "capture.completed",
        "data_fields": ["width", "height", "scale_factor", "bytes"],
    },
    {
        "event_type": "upload.completed",
        "data_fields": ["outcome", "reason", "sha256"],
    },
    {
        "event_type": "update.state",
        "data_fields": ["phase", "version", "percent", "snoozed_until", "ends_at", "remaining_seconds"],
    },
    {
        "event_type": "error.handled",
        "data_fields": ["error_type", "message", "stage"],
    },
    {
        "event_type": "shutdown",
        "data_fields": [],
    },
]

KNOWN_EVENTS = frozenset(entry["event_type"] for entry in EVENT_CATALOG)

_handlers: List[EventHandler] = []
_tool = "send-to-crm"
_to_stderr = True


def configure(source: str, stderr: bool = True) -> None:
    """Name the emitting tool and choose whether events go to stderr."""
    global _tool, _to_stderr
    _tool = source
    _to_stderr = stderr


def add_handler(handler: EventHandler) -> None:
    _handlers.append(handler)


def clear_handlers() -> None:
    del _handlers[:]


def build_event(event_type: str, data: Dict[str, Any], source: Optional[str] = None) -> dict:
    return {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "source": {"tool": source or _tool},
        "data": data,
    }


def _write_line(event: dict) -> None:
    try:
        sys.stderr.write(json.dumps(event, default=str) + "\n")
        sys.stderr.flush()
    except (TypeError, ValueError, OSError) as exc:
        logger.debug("Dropped %s event: %s", event["event_type"], exc)


def emit(event_type: str, data: Dict[str, Any], source: Optional[str] = None) -> None:
    """Publish one event to stderr and every registered handler.

    A failing handler is logged and skipped; emitting never raises.
    """
    if event_type not in KNOWN_EVENTS:
        logger.warning("Emitting uncatalogued event %r", event_type)

    event = build_event(event_type, data, source)
    if _to_stderr:
        _write_line(event)

    for handler in list(_handlers):
        try:
            handler(event)
        except Exception as exc:
            logger.debug("Event handler %r failed: %s", handler, exc)
