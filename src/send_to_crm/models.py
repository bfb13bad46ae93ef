"""Value types shared by the capture, upload and update code."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union


@dataclass(frozen=True)
class CaptureBounds:
    """Rectangle in logical (unscaled) screen coordinates."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Bounds must have a positive size, got {self.width}x{self.height}")

    def contains(self, other: "CaptureBounds") -> bool:
        return (
            other.x >= self.x
            and other.y >= self.y
            and other.x + other.width <= self.x + self.width
            and other.y + other.height <= self.y + self.height
        )

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class CaptureResult:
    """PNG bytes of a cropped region plus the selection that produced it."""

    png_bytes: bytes
    bounds: CaptureBounds
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ─────────────────────────────────────────────────────────────
# Upload outcomes
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class QuotaAction:
    type: str
    url: str
    label: str


@dataclass(frozen=True)
class QuotaInfo:
    current_count: Optional[int]
    quota_limit: Optional[int]
    user_message: str
    action: QuotaAction


@dataclass(frozen=True)
class Success:
    response: Optional[Any] = None


@dataclass(frozen=True)
class AuthInvalid:
    pass


@dataclass(frozen=True)
class QuotaExceeded:
    info: QuotaInfo


@dataclass(frozen=True)
class Forbidden:
    details: Any = None


@dataclass(frozen=True)
class NotPaired:
    pass


@dataclass(frozen=True)
class TransientFailure:
    reason: str
    details: Any = None


UploadOutcome = Union[Success, AuthInvalid, QuotaExceeded, Forbidden, NotPaired, TransientFailure]


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a pairing token check. ``reason`` is set only when not ok."""

    ok: bool
    reason: Optional[str] = None


# ─────────────────────────────────────────────────────────────
# Update lifecycle
# ─────────────────────────────────────────────────────────────

class UpdatePhase(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    AVAILABLE = "available"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    SNOOZED = "snoozed"
    COUNTING_DOWN = "counting_down"
    DEFERRED = "deferred"
    INSTALLING = "installing"


@dataclass(frozen=True)
class UpdateState:
    """Snapshot of the update controller, as pushed to prompt surfaces.

    Only the fields relevant to ``phase`` are populated: ``percent`` while
    downloading, ``snoozed_until`` while snoozed, ``ends_at`` and
    ``remaining_seconds`` while counting down. Timestamps are epoch seconds.
    """

    phase: UpdatePhase = UpdatePhase.IDLE
    version: Optional[str] = None
    percent: Optional[float] = None
    snoozed_until: Optional[float] = None
    ends_at: Optional[float] = None
    remaining_seconds: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "version": self.version,
            "percent": self.percent,
            "snoozed_until": self.snoozed_until,
            "ends_at": self.ends_at,
            "remaining_seconds": self.remaining_seconds,
        }


@dataclass(frozen=True)
class ReleaseInfo:
    """Metadata describing a published build."""

    version: str
    download_url: str
    sha256: Optional[str] = None
    release_notes: Optional[str] = None


# Prompt surface kinds understood by the UI host
PROMPT_UPDATE = "update"
PROMPT_QUOTA = "quota"
PROMPT_PAIRING = "pairing"
