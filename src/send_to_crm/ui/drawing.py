"""Cairo drawing helpers for the selection overlay."""

import cairo

INSTRUCTIONS = (
    "Drag: select the area to send",
    "Enter: send selection",
    "ESC/Right-click: cancel",
)


def draw_dim(cr: cairo.Context, width: int, height: int, alpha: float = 0.35):
    """Dim the whole surface before a selection exists."""
    cr.set_source_rgba(0, 0, 0, alpha)
    cr.rectangle(0, 0, width, height)
    cr.fill()


def draw_selection_overlay(
    cr: cairo.Context,
    x: int,
    y: int,
    width: int,
    height: int,
    surface_width: int,
    surface_height: int,
):
    """Dim everything outside the selection and outline it."""
    cr.set_source_rgba(0, 0, 0, 0.5)
    cr.rectangle(0, 0, surface_width, y)
    cr.rectangle(0, y, x, height)
    cr.rectangle(x + width, y, surface_width - (x + width), height)
    cr.rectangle(0, y + height, surface_width, surface_height - (y + height))
    cr.fill()

    cr.set_source_rgb(0.3, 0.6, 1.0)
    cr.set_line_width(2)
    cr.rectangle(x, y, width, height)
    cr.stroke()


def _label(cr: cairo.Context, text: str, x: float, y: float, pad: float, background_alpha: float):
    """White ``text`` with its baseline at (x, y) on a dark padded box."""
    extents = cr.text_extents(text)
    cr.set_source_rgba(0, 0, 0, background_alpha)
    cr.rectangle(x - pad, y - extents.height - pad, extents.width + 2 * pad, extents.height + 2 * pad)
    cr.fill()
    cr.set_source_rgb(1, 1, 1)
    cr.move_to(x, y)
    cr.show_text(text)


def draw_dimension_text(cr: cairo.Context, x: int, y: int, width: int, height: int):
    """Label the selection with its logical size, just inside its top-left corner."""
    cr.select_font_face("monospace", cairo.FONT_SLANT_NORMAL, cairo.FONT_WEIGHT_BOLD)
    cr.set_font_size(13)
    text = f"{width} x {height}"
    _label(cr, text, x + 6, y + cr.text_extents(text).height + 8, pad=4, background_alpha=0.8)


def draw_instructions(cr: cairo.Context, x: int = 20, y: int = 30, line_height: int = 22):
    cr.select_font_face("sans-serif", cairo.FONT_SLANT_NORMAL, cairo.FONT_WEIGHT_NORMAL)
    cr.set_font_size(14)
    for line in INSTRUCTIONS:
        _label(cr, line, x, y, pad=4, background_alpha=0.7)
        y += line_height
