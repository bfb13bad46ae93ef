"""Capture upload and pairing-token verification.

One HTTP attempt per call. The client only reports what happened; clearing
tokens, opening prompts and notifying the user is the coordinator's job.
"""

import hashlib
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from . import __version__
from .config import DEFAULT_BILLING_URL
from .models import (
    AuthInvalid,
    CaptureBounds,
    Forbidden,
    NotPaired,
    QuotaAction,
    QuotaExceeded,
    QuotaInfo,
    Success,
    TransientFailure,
    UploadOutcome,
    VerifyResult,
)

log = logging.getLogger(__name__)

UPLOAD_PATH = "/screenshot-capture"
VERIFY_PATH = "/desktop-verify-token"

DEFAULT_QUOTA_MESSAGE = "You've reached your monthly capture limit."
DEFAULT_UPGRADE_LABEL = "Upgrade to Pro"


def client_os() -> str:
    if sys.platform.startswith("win"):
        return "win32"
    if sys.platform == "darwin":
        return "darwin"
    return "linux"


def _endpoint(api_base_url: str, path: str) -> str:
    return api_base_url.rstrip("/") + path


def _body(response: httpx.Response) -> Any:
    """JSON body if there is one, else the raw text."""
    try:
        return response.json()
    except ValueError:
        return response.text


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_quota_body(body: Any, billing_url: str = DEFAULT_BILLING_URL) -> Optional[QuotaInfo]:
    """Normalize a 403 body into QuotaInfo, or None if it is not a quota error.

    Missing fields get defaults: a generic message, and an "open billing
    page" action pointing at the body's ``billing_url`` when present.
    """
    if not isinstance(body, dict) or body.get("error") != "quota_exceeded":
        return None

    url = body.get("billing_url") or billing_url
    message = body.get("message") or body.get("user_message") or DEFAULT_QUOTA_MESSAGE

    raw_action = body.get("action")
    if isinstance(raw_action, dict) and raw_action.get("url"):
        action = QuotaAction(
            type=str(raw_action.get("type") or "open_url"),
            url=str(raw_action["url"]),
            label=str(raw_action.get("label") or DEFAULT_UPGRADE_LABEL),
        )
    else:
        action = QuotaAction(type="open_url", url=url, label=DEFAULT_UPGRADE_LABEL)

    return QuotaInfo(
        current_count=_as_int(body.get("current_count")),
        quota_limit=_as_int(body.get("quota")),
        user_message=str(message),
        action=action,
    )


def classify_response(response: httpx.Response, billing_url: str = DEFAULT_BILLING_URL) -> UploadOutcome:
    """Map an upload response to exactly one outcome, most specific first."""
    status = response.status_code
    if 200 <= status < 300:
        if not response.content:
            return Success(None)
        try:
            return Success(response.json())
        except ValueError:
            return Success(None)
    if status == 401:
        return AuthInvalid()
    if status == 403:
        body = _body(response)
        quota = parse_quota_body(body, billing_url)
        if quota is not None:
            return QuotaExceeded(quota)
        return Forbidden(body)
    return TransientFailure(f"http_{status}", _body(response))


class UploadClient:
    """Posts captures to the ingest endpoint."""

    def __init__(
        self,
        billing_url: str = DEFAULT_BILLING_URL,
        timeout_s: float = 20.0,
        connect_timeout_s: float = 12.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.billing_url = billing_url
        self.upload_timeout = httpx.Timeout(timeout_s, connect=connect_timeout_s)
        self.verify_timeout = httpx.Timeout(connect_timeout_s)
        self._transport = transport

    def _client(self, timeout: httpx.Timeout) -> httpx.Client:
        return httpx.Client(timeout=timeout, transport=self._transport)

    def upload(
        self,
        png_bytes: bytes,
        bounds: Optional[CaptureBounds],
        token: str,
        api_base_url: str,
        captured_at: Optional[datetime] = None,
    ) -> UploadOutcome:
        token = (token or "").strip()
        if not token:
            return NotPaired()

        captured_at = captured_at or datetime.now(timezone.utc)
        data = {
            "captured_at": captured_at.isoformat(),
            "client_os": client_os(),
            "client_version": __version__,
            "bounds": json.dumps(bounds.to_dict() if bounds else None),
            "sha256": hashlib.sha256(png_bytes).hexdigest(),
        }
        files = {"image": ("screenshot.png", png_bytes, "image/png")}
        url = _endpoint(api_base_url, UPLOAD_PATH)

        try:
            with self._client(self.upload_timeout) as client:
                response = client.post(
                    url,
                    headers={"Authorization": f"Bearer {token}"},
                    data=data,
                    files=files,
                )
        except httpx.TimeoutException as e:
            log.warning("Upload timed out: %s", e)
            return TransientFailure("timeout", str(e))
        except httpx.HTTPError as e:
            log.warning("Upload failed: %s", e)
            return TransientFailure("network", str(e))

        log.debug("Upload response: HTTP %d", response.status_code)
        return classify_response(response, self.billing_url)

    def verify(self, token: str, api_base_url: str) -> VerifyResult:
        token = (token or "").strip()
        if not token:
            return VerifyResult(ok=False, reason="invalid_token")

        url = _endpoint(api_base_url, VERIFY_PATH)
        try:
            with self._client(self.verify_timeout) as client:
                response = client.post(url, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as e:
            log.warning("Token verification timed out: %s", e)
            return VerifyResult(ok=False, reason="verify_failed_timeout")
        except httpx.HTTPError as e:
            log.warning("Token verification failed: %s", e)
            return VerifyResult(ok=False, reason="verify_failed_network")

        status = response.status_code
        if 200 <= status < 300:
            return VerifyResult(ok=True)
        if status in (401, 403):
            return VerifyResult(ok=False, reason="invalid_token")
        return VerifyResult(ok=False, reason=f"verify_failed_{status}")
