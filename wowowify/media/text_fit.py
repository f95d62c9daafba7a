"""
Text-fit geometry: greedy word wrap, single-pass font shrinking and anchor
placement on a 3x3 grid. Pure functions over a caller-supplied ``measure``
callable, so nothing here depends on Pillow.
"""
import math
from typing import Callable, List, NamedTuple, Optional

from wowowify.specs.common.enums import TextPosition

MIN_FONT_SIZE = 12
SAFETY_MARGIN = 0.9
PADDING = 10
LINE_HEIGHT = 1.2

Measure = Callable[[str], float]


class TextFit(NamedTuple):
    lines: List[str]
    fontSize: int


class Anchor(NamedTuple):
    x: float
    y: float
    align: str  # left | center | right


def wrap_text(text: str, max_width: float, measure: Measure) -> List[str]:
    """Greedy word wrap.

    A word wider than ``max_width`` is never split; it gets a line of its own.
    """
    lines: List[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if not current or measure(candidate) <= max_width:
            current = candidate
        else:
            lines.append(current)
            current = word
        # an over-wide word closes its own line right away
        if current == word and measure(word) > max_width:
            lines.append(current)
            current = ""
    if current:
        lines.append(current)
    return lines


def adapt_font_size(text: str, max_width: float, measure: Measure, base_font_size: int) -> int:
    width = measure(text)
    if width <= max_width or width <= 0 or max_width <= 0:
        return base_font_size
    return max(MIN_FONT_SIZE, int(math.floor(base_font_size * (max_width / width) * SAFETY_MARGIN)))


def fit(
    text: str,
    max_width: float,
    measure: Measure,
    base_font_size: int,
    measure_at: Optional[Callable[[int], Measure]] = None,
) -> TextFit:
    """Shrink once, then wrap.

    ``measure`` reports widths at ``base_font_size``. When ``measure_at`` is
    given, wrapping measures at the adapted size instead.
    """
    size = adapt_font_size(text, max_width, measure, base_font_size)
    wrap_measure = measure_at(size) if measure_at is not None else measure
    return TextFit(wrap_text(text, max_width, wrap_measure), size)


def resolve_anchor(
    position: TextPosition,
    width: float,
    height: float,
    font_size: float,
    padding: float = PADDING,
) -> Anchor:
    pos = TextPosition(position)
    name = pos.value
    if name.endswith("left"):
        x, align = padding, "left"
    elif name.endswith("right"):
        x, align = width - padding, "right"
    else:
        x, align = width / 2, "center"

    if name.startswith("top"):
        y = padding + font_size / 2
    elif name.startswith("bottom"):
        y = height - padding - font_size / 2
    else:
        y = height / 2
    return Anchor(x, y, align)


def line_centers(anchor_y: float, line_count: int, font_size: float, line_height: float = LINE_HEIGHT) -> List[float]:
    """Vertical centers of each line, the whole block centered on ``anchor_y``."""
    step = font_size * line_height
    total = line_count * step
    first = anchor_y - total / 2 + step / 2
    return [first + i * step for i in range(line_count)]
