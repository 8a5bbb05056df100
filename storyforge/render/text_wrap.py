"""Greedy word wrapping for title and subtitle text."""

from collections.abc import Callable
from typing import Any

from PIL import ImageDraw


def wrap_text(text: str, max_width: float, measure: Callable[[str], float]) -> list[str]:
    """Break ``text`` into lines no wider than ``max_width``.

    Words are kept in order and joined by single spaces. A word that is
    wider than ``max_width`` on its own is never split; it gets a line of
    its own and overflows.

    Args:
        text: Text to wrap
        max_width: Maximum line width, in the units ``measure`` returns
        measure: Returns the rendered width of a string in the active font

    Returns:
        Lines in drawing order (empty for blank text)
    """
    lines: list[str] = []
    line = ""
    for word in text.split():
        candidate = f"{line} {word}" if line else word
        if measure(candidate) > max_width and line:
            lines.append(line)
            line = word
        else:
            line = candidate
    if line:
        lines.append(line)
    return lines


def draw_wrapped_text(
    draw: ImageDraw.ImageDraw,
    text: str,
    origin: tuple[float, float],
    max_width: float,
    line_height: float,
    font: Any,
    fill: Any,
) -> float:
    """Draw wrapped text left-aligned with the first baseline at ``origin``.

    Returns:
        Baseline y of the line that would follow the last drawn line
    """
    x, y = origin
    for line in wrap_text(text, max_width, font.getlength):
        draw.text((x, y), line, font=font, fill=fill, anchor="ls")
        y += line_height
    return y
