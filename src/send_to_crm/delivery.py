"""Turns captures into uploads and upload outcomes into user-visible effects."""

import hashlib
import logging
from typing import Callable, Optional

from .config import Config, get_config
from .emit import emit
from .models import (
    PROMPT_PAIRING,
    PROMPT_QUOTA,
    AuthInvalid,
    CaptureResult,
    Forbidden,
    NotPaired,
    QuotaExceeded,
    Success,
    TransientFailure,
    UploadOutcome,
    VerifyResult,
)
from .output import persist_local
from .settings import API_BASE_URL, AUTH_TOKEN, SettingsStore
from .upload import UploadClient

log = logging.getLogger(__name__)

FAILURE_TITLE = "Upload failed"
FAILURE_BODY = "Couldn't send your screenshot. Please try again."


class DeliveryCoordinator:
    """Uploads each capture once and applies exactly one consequence per outcome.

    Captures are independent: a new one can start while an earlier upload
    is still in flight, and their outcomes may arrive in either order.
    """

    def __init__(
        self,
        client: UploadClient,
        settings: SettingsStore,
        notifier,
        ui,
        scheduler,
        config: Optional[Config] = None,
    ):
        self.client = client
        self.settings = settings
        self.notifier = notifier
        self.ui = ui
        self.scheduler = scheduler
        self.config = config or get_config()
        self.in_flight = 0

    @property
    def api_base_url(self) -> str:
        return str(self.settings.get(API_BASE_URL) or self.config.api_base_url)

    def deliver(self, result: CaptureResult) -> None:
        """Upload ``result`` off the main loop and handle the outcome on it."""
        persist_local(result, self.config)

        token = self.settings.auth_token
        api_base_url = self.api_base_url

        def _work() -> UploadOutcome:
            return self.client.upload(
                result.png_bytes,
                result.bounds,
                token,
                api_base_url,
                captured_at=result.captured_at,
            )

        def _done(outcome: UploadOutcome) -> None:
            self.in_flight -= 1
            self.handle_outcome(outcome, result)

        def _failed(exc: BaseException) -> None:
            self.in_flight -= 1
            log.error("Upload raised unexpectedly: %s", exc)
            self.handle_outcome(TransientFailure("error", str(exc)), result)

        self.in_flight += 1
        self.scheduler.run_in_background(_work, _done, _failed)

    def handle_outcome(self, outcome: UploadOutcome, result: Optional[CaptureResult] = None) -> None:
        digest = hashlib.sha256(result.png_bytes).hexdigest() if result else None
        emit("upload.completed", {
            "outcome": type(outcome).__name__,
            "reason": getattr(outcome, "reason", None),
            "sha256": digest,
        })

        if isinstance(outcome, Success):
            log.info("Capture uploaded")
            self.notifier.notify("Sent to CRM", "Your screenshot was uploaded.")

        elif isinstance(outcome, QuotaExceeded):
            info = outcome.info
            log.info("Upload rejected: quota reached (%s/%s)", info.current_count, info.quota_limit)
            self.notifier.notify("Upload limit reached", info.user_message)
            if self.ui.is_prompt_open(PROMPT_QUOTA):
                self.ui.update_prompt_surface(PROMPT_QUOTA, info)
            else:
                self.ui.show_prompt_surface(PROMPT_QUOTA, info)

        elif isinstance(outcome, AuthInvalid):
            log.warning("Upload rejected: token no longer valid, clearing pairing")
            self.settings.clear_auth_token()
            self.notifier.notify(
                "Pairing expired",
                "This computer was disconnected from your account. Pair it again to keep sending captures.",
            )
            self.ui.show_prompt_surface(PROMPT_PAIRING, None)

        elif isinstance(outcome, NotPaired):
            log.info("Capture skipped: not paired yet")
            self.ui.show_prompt_surface(PROMPT_PAIRING, None)

        elif isinstance(outcome, Forbidden):
            log.warning("Upload forbidden: %s", outcome.details)
            emit("error.handled", {"error_type": "Forbidden", "message": str(outcome.details), "stage": "upload"})
            self.notifier.notify(FAILURE_TITLE, FAILURE_BODY)

        elif isinstance(outcome, TransientFailure):
            log.warning("Upload failed (%s): %s", outcome.reason, outcome.details)
            emit("error.handled", {"error_type": "TransientFailure", "message": outcome.reason, "stage": "upload"})
            self.notifier.notify(FAILURE_TITLE, FAILURE_BODY)

        else:
            raise TypeError(f"Unknown upload outcome: {outcome!r}")

    def verify_and_store(self, token: str) -> VerifyResult:
        """Check ``token`` against the server and keep it if accepted."""
        token = (token or "").strip()
        result = self.client.verify(token, self.api_base_url)
        if result.ok:
            self.settings.set(AUTH_TOKEN, token)
            log.info("Paired with account")
        else:
            log.warning("Pairing failed: %s", result.reason)
        return result

    def pair(self, token: str, on_result: Optional[Callable[[VerifyResult], None]] = None) -> None:
        """Background variant of verify_and_store for the pairing prompt."""

        def _done(result: VerifyResult) -> None:
            if result.ok:
                self.ui.close_prompt_surface(PROMPT_PAIRING)
                self.notifier.notify("Paired", "Captures will now be sent to your CRM.")
            if on_result is not None:
                on_result(result)

        def _failed(exc: BaseException) -> None:
            log.error("Pairing raised unexpectedly: %s", exc)
            _done(VerifyResult(ok=False, reason="verify_failed_error"))

        self.scheduler.run_in_background(lambda: self.verify_and_store(token), _done, _failed)
