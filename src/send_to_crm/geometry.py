"""Logical-to-native pixel arithmetic for region capture.

Selections arrive in logical coordinates; screen grabs are in native
pixels. Every offset and size goes through the same scale and the same
rounding, otherwise the crop drifts on HiDPI displays.
"""

import math
from typing import Optional

from .models import CaptureBounds


def round_half_up(value: float) -> int:
    """Round to the nearest integer, .5 away from zero for positive values."""
    return int(math.floor(value + 0.5))


def scaled_size(bounds: CaptureBounds, scale_factor: float) -> tuple[int, int]:
    """Native pixel size of a logical rectangle."""
    return (
        round_half_up(bounds.width * scale_factor),
        round_half_up(bounds.height * scale_factor),
    )


def crop_rect(
    selection: CaptureBounds,
    scale_factor: float,
    image_width: int,
    image_height: int,
    origin: Optional[CaptureBounds] = None,
) -> tuple[int, int, int, int]:
    """Native-pixel (x, y, width, height) to cut out of a full-display image.

    ``origin`` is the display the image was taken from; selection
    coordinates are made relative to it. The output size is always
    ``scaled_size(selection)``; when rounding would push the rectangle past
    the image edge the origin is moved inward instead.
    """
    if scale_factor <= 0:
        raise ValueError(f"scale_factor must be > 0, got {scale_factor}")

    rel_x = selection.x - (origin.x if origin else 0)
    rel_y = selection.y - (origin.y if origin else 0)

    x = round_half_up(rel_x * scale_factor)
    y = round_half_up(rel_y * scale_factor)
    width, height = scaled_size(selection, scale_factor)

    if width > image_width or height > image_height:
        raise ValueError(
            f"Selection {width}x{height} does not fit image {image_width}x{image_height}"
        )

    x = min(max(0, x), image_width - width)
    y = min(max(0, y), image_height - height)
    return x, y, width, height


def drag_rect(
    start: tuple[float, float], end: tuple[float, float]
) -> tuple[int, int, int, int]:
    """Normalized (x, y, width, height) spanned by a pointer drag."""
    (x0, y0), (x1, y1) = start, end
    return int(min(x0, x1)), int(min(y0, y1)), int(abs(x1 - x0)), int(abs(y1 - y0))


def selection_on_display(
    rect: tuple[int, int, int, int], display: CaptureBounds
) -> Optional[CaptureBounds]:
    """Surface-relative ``rect`` clipped to ``display``, in display coordinates.

    Returns None when nothing of the rectangle is left on the display.
    """
    x, y, width, height = rect
    left, top = max(0, x), max(0, y)
    right = min(x + width, display.width)
    bottom = min(y + height, display.height)
    if right <= left or bottom <= top:
        return None
    return CaptureBounds(display.x + left, display.y + top, right - left, bottom - top)
