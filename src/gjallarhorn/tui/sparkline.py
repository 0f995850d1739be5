"""Sparkline widget for one history series.

The widget does not keep its own buffer; the dashboard hands it the frozen
tuple from the current composite snapshot on every refresh.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from rich.text import Text
from textual.reactive import reactive
from textual.widgets import Static

if TYPE_CHECKING:
    from textual.app import RenderResult

BLOCKS = " ▁▂▃▄▅▆▇█"
LEVELS_PER_ROW = 8


def scale_level(value: float, max_value: float, height: int) -> int:
    """Scale a value to 0..(height * LEVELS_PER_ROW)."""
    total = height * LEVELS_PER_ROW
    if max_value <= 0:
        return 0
    normalized = max(0.0, min(1.0, value / max_value))
    return int(round(normalized * total))


def column_chars(level: int, height: int) -> list[str]:
    """Characters for one column, bottom row first."""
    chars = []
    for row in range(height):
        remaining = level - row * LEVELS_PER_ROW
        if remaining <= 0:
            chars.append(BLOCKS[0])
        elif remaining >= LEVELS_PER_ROW:
            chars.append(BLOCKS[LEVELS_PER_ROW])
        else:
            chars.append(BLOCKS[remaining])
    return chars


def render_series(
    values: Sequence[float],
    width: int,
    height: int = 1,
    max_value: float | None = 100.0,
    color: str = "",
) -> Text:
    """Render the newest ``width`` values right-aligned, oldest on the left.

    ``max_value=None`` auto-scales to the largest visible value.
    """
    width = max(1, width)
    visible = list(values)[-width:]
    pad = width - len(visible)
    top = max_value if max_value is not None else max(visible, default=0.0)

    rows = [Text(" " * pad) for _ in range(height)]
    for value in visible:
        for row, char in enumerate(column_chars(scale_level(value, top, height), height)):
            rows[row].append(char, style=color or None)

    result = Text()
    for i, row in enumerate(reversed(rows)):
        if i > 0:
            result.append("\n")
        result.append(row)
    return result


class Sparkline(Static):
    """A sparkline of a history series using block characters."""

    DEFAULT_CSS = """
    Sparkline {
        width: 1fr;
        height: auto;
    }
    """

    data: reactive[tuple[float, ...]] = reactive(tuple, always_update=True)

    def __init__(
        self,
        color: str = "",
        height: int = 1,
        max_value: float | None = 100.0,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.color = color
        self._height = max(1, min(4, height))
        self._max_value = max_value

    def set_series(self, values: Sequence[float]) -> None:
        self.data = tuple(values)

    def render(self) -> RenderResult:
        return render_series(
            self.data,
            width=self.size.width or len(self.data) or 1,
            height=self._height,
            max_value=self._max_value,
            color=self.color,
        )

    def watch_data(self, new_data: tuple[float, ...]) -> None:
        self.refresh()
