"""Region capture.

Grabs the full primary display through the wayland-capture helper, crops the
user's selection at native resolution and returns PNG bytes. Nothing is
written to disk here; see output.py for the opt-in local copy.
"""

import json
import logging
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Optional

import gi
gi.require_version("GdkPixbuf", "2.0")
from gi.repository import GdkPixbuf, GLib

from .config import Config, get_config
from .errors import CaptureError, CaptureSourceUnavailable, PermissionDenied
from .geometry import crop_rect, round_half_up, scaled_size
from .models import CaptureBounds, CaptureResult

log = logging.getLogger(__name__)


def get_screen_capture_status() -> str:
    """Report whether this process may record the screen.

    The wayland-capture backend goes through the compositor's screencopy
    protocol, which has no per-app grant. Platforms that do gate capture
    pass their own probe to RegionCapturer.

    Returns:
        "granted" or "denied"
    """
    return "granted"


def _run_helper(config: Config, args: list[str], timeout: float) -> str:
    """Run the wayland-capture helper and return its stdout.

    Raises:
        CaptureError: helper missing, timed out or exited non-zero
    """
    command = [config.wayland_capture, *args]
    try:
        proc = subprocess.run(command, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise CaptureError(f"{config.wayland_capture} is not installed") from e
    except subprocess.TimeoutExpired as e:
        raise CaptureError(f"{config.wayland_capture} {args[0]} timed out after {timeout:.0f}s") from e
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit status {proc.returncode}"
        raise CaptureError(f"{config.wayland_capture} {args[0]} failed: {detail}")
    return proc.stdout


def list_outputs(config: Optional[Config] = None) -> list[dict]:
    """Outputs reported by the helper: name, width, height, x, y (native px).

    An empty list means enumeration failed; the reason is logged.
    """
    config = config or get_config()
    try:
        payload = json.loads(_run_helper(config, ["--list", "--json"], timeout=5))
    except (CaptureError, ValueError) as e:
        log.warning("Could not enumerate screen sources: %s", e)
        return []
    outputs = payload.get("outputs") if isinstance(payload, dict) else None
    return outputs if isinstance(outputs, list) else []


def select_source(
    sources: list[dict],
    display_bounds: CaptureBounds,
    scale_factor: float,
) -> Optional[dict]:
    """Pick the source that is the whole target display.

    Matches on geometry: the source must sit at the display origin and
    report its size, each in either logical or native pixels. Names are
    ignored, they are localized and differ between compositors.
    """
    logical = (display_bounds.width, display_bounds.height)
    native = scaled_size(display_bounds, scale_factor)
    origins = (
        (display_bounds.x, display_bounds.y),
        (round_half_up(display_bounds.x * scale_factor), round_half_up(display_bounds.y * scale_factor)),
    )

    for source in sources:
        try:
            size = (int(source["width"]), int(source["height"]))
            pos = (int(source.get("x", 0)), int(source.get("y", 0)))
        except (KeyError, TypeError, ValueError):
            continue
        if pos not in origins:
            continue
        if size in (logical, native):
            return source
    return None


class WaylandScreenSource:
    """Screen sources as enumerated by the wayland-capture helper."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def list_sources(self) -> list[dict]:
        return list_outputs(self.config)

    def grab(self, source: dict) -> GdkPixbuf.Pixbuf:
        """Full-resolution image of one output. The temporary PNG is removed."""
        with tempfile.TemporaryDirectory(prefix="send-to-crm-") as workdir:
            target = Path(workdir) / "grab.png"
            _run_helper(self.config, ["--output", source["name"], "--output-file", str(target)], timeout=10)
            try:
                return GdkPixbuf.Pixbuf.new_from_file(str(target))
            except GLib.Error as e:
                raise CaptureError(f"Unreadable grab of {source['name']}: {e.message}") from e


def encode_png(pixbuf: GdkPixbuf.Pixbuf) -> bytes:
    ok, data = pixbuf.save_to_bufferv("png", [], [])
    if not ok:
        raise CaptureError("PNG encoding failed")
    return bytes(data)


def decode_png(data: bytes) -> GdkPixbuf.Pixbuf:
    loader = GdkPixbuf.PixbufLoader.new_with_type("png")
    loader.write(data)
    loader.close()
    return loader.get_pixbuf()


class RegionCapturer:
    """Turns a logical selection into a native-resolution PNG."""

    def __init__(
        self,
        config: Optional[Config] = None,
        source=None,
        permission_status: Callable[[], str] = get_screen_capture_status,
    ):
        self.config = config or get_config()
        self.source = source or WaylandScreenSource(self.config)
        self.permission_status = permission_status

    def capture(
        self,
        display_bounds: CaptureBounds,
        selection: CaptureBounds,
        scale_factor: float,
    ) -> CaptureResult:
        """Capture ``selection`` from the display described by ``display_bounds``.

        Raises:
            ValueError: scale_factor <= 0 or selection outside the display
            PermissionDenied: the OS grant is missing (never prompts)
            CaptureSourceUnavailable: no source matches the display
            CaptureError: the grab itself failed
        """
        if scale_factor <= 0:
            raise ValueError(f"scale_factor must be > 0, got {scale_factor}")
        if not display_bounds.contains(selection):
            raise ValueError(f"Selection {selection} is outside display {display_bounds}")

        if self.permission_status() != "granted":
            raise PermissionDenied("Screen recording permission has not been granted")

        sources = self.source.list_sources()
        source = select_source(sources, display_bounds, scale_factor)
        if source is None:
            raise CaptureSourceUnavailable(
                f"No screen source matches display {display_bounds.width}x{display_bounds.height}"
                f" at {display_bounds.x},{display_bounds.y} ({len(sources)} enumerated)"
            )

        full = self.source.grab(source)
        native_w, native_h = scaled_size(display_bounds, scale_factor)
        if (full.get_width(), full.get_height()) != (native_w, native_h):
            log.debug(
                "Rescaling %dx%d grab to %dx%d",
                full.get_width(), full.get_height(), native_w, native_h,
            )
            full = full.scale_simple(native_w, native_h, GdkPixbuf.InterpType.BILINEAR)

        x, y, w, h = crop_rect(selection, scale_factor, native_w, native_h, origin=display_bounds)
        cropped = full.new_subpixbuf(x, y, w, h)
        png_bytes = encode_png(cropped)
        log.debug("Captured %dx%d region at %d,%d (scale %.2f)", w, h, x, y, scale_factor)

        return CaptureResult(png_bytes=png_bytes, bounds=selection)
