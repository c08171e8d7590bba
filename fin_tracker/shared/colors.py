"""Category colour palette and allocation."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence

PASTEL_LIGHT = (
    "#FDE2E4",  # pastel pink
    "#E2F0CB",  # pastel green
    "#CDE7F0",  # pastel blue
    "#FFF1BA",  # pastel yellow
    "#EAD7F7",  # pastel purple
    "#F9D5E5",
    "#D8E2DC",
    "#FFE5D9",
    "#E2ECE9",
    "#F6DFEB",
    "#D7E3FC",
    "#F0E6FF",
    "#FFE4E1",
    "#E0F2F1",
    "#FFF8DC",
    "#F5F5DC",
    "#E6E6FA",
    "#FFEFD5",
    "#F0FFF0",
    "#FDF5E6",
)

PASTEL_DARK = (
    "#D4A5A9",
    "#B8D4A0",
    "#A5C4D9",
    "#E6D48A",
    "#C9B0D9",
    "#D9B5C5",
    "#B0C0B8",
    "#E6C4B5",
    "#B8D0C9",
    "#D9BFC9",
    "#B3C7E6",
    "#C9B0E6",
    "#E6C0BD",
    "#B8D9D4",
    "#E6E0B8",
    "#D9D9B8",
    "#C9C9E6",
    "#E6D9B0",
    "#C9E6C9",
    "#E6D9C9",
)

PASTEL_PALETTE: tuple[str, ...] = PASTEL_LIGHT + PASTEL_DARK


def next_available_color(
    used_colors: Iterable[str | None],
    palette: Sequence[str] = PASTEL_PALETTE,
) -> str:
    """Return the first unused palette colour, or the least-used one once all are taken.

    Comparison is case-insensitive. Ties between equally used colours resolve to
    palette order, so the result depends only on the inputs.
    """

    if not palette:
        raise ValueError("palette must contain at least one colour")
    counts = Counter(color.strip().upper() for color in used_colors if color and color.strip())
    for color in palette:
        if counts[color.upper()] == 0:
            return color
    return min(palette, key=lambda color: counts[color.upper()])
