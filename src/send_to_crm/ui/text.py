"""User-facing wording for the prompt surfaces. No GTK imports."""

import time
from typing import Optional

from ..models import QuotaInfo, UpdatePhase, UpdateState

ACTION_OPEN_URL = "open_url"

SNOOZE_CHOICES = (
    (15, "In 15 minutes"),
    (60, "In 1 hour"),
)

PAIRING_ERRORS = {
    "invalid_token": "That pairing code was not accepted. Copy a fresh one from your CRM settings.",
    "verify_failed_timeout": "The server did not answer in time. Check your connection and try again.",
    "verify_failed_network": "Could not reach the server. Check your connection and try again.",
}


def format_countdown(seconds: int) -> str:
    """``M:SS`` for the restart countdown."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def update_message(state: UpdateState) -> tuple[str, str]:
    """Title and body for the update prompt in ``state``."""
    version = state.version or "a new version"
    if state.phase == UpdatePhase.COUNTING_DOWN:
        return (
            "Update ready",
            f"Send to CRM will restart in {format_countdown(state.remaining_seconds or 0)}"
            f" to install {version}.",
        )
    if state.phase == UpdatePhase.SNOOZED and state.snoozed_until:
        until = time.strftime("%H:%M", time.localtime(state.snoozed_until))
        return ("Update postponed", f"Restart to install {version} postponed until {until}.")
    if state.phase == UpdatePhase.DEFERRED:
        return ("Restart pending", f"{version} will be installed as soon as you finish your capture.")
    if state.phase == UpdatePhase.INSTALLING:
        return ("Installing update", f"Restarting to install {version}...")
    return ("Update ready", f"Restart to install {version}.")


def quota_message(info: QuotaInfo) -> str:
    if info.current_count is not None and info.quota_limit is not None:
        return f"{info.user_message}\n{info.current_count} of {info.quota_limit} captures used this month."
    return info.user_message


def quota_action_label(info: QuotaInfo) -> Optional[str]:
    """Button label for the quota action, or None if we cannot perform it."""
    if info.action.type != ACTION_OPEN_URL or not info.action.url:
        return None
    return info.action.label


def pairing_error(reason: Optional[str]) -> str:
    if reason in PAIRING_ERRORS:
        return PAIRING_ERRORS[reason]
    return f"Pairing failed ({reason or 'unknown error'}). Please try again."
