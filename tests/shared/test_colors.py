from __future__ import annotations

import pytest

from fin_tracker.shared.colors import PASTEL_PALETTE, next_available_color


def test_returns_first_unused_color() -> None:
    used = [PASTEL_PALETTE[0], PASTEL_PALETTE[1]]
    assert next_available_color(used) == PASTEL_PALETTE[2]


def test_comparison_is_case_insensitive() -> None:
    palette = ("#AAAAAA", "#BBBBBB")
    assert next_available_color(["#aaaaaa"], palette) == "#BBBBBB"


def test_least_used_once_palette_exhausted() -> None:
    palette = ("#AAAAAA", "#BBBBBB", "#CCCCCC")
    used = ["#AAAAAA", "#AAAAAA", "#BBBBBB", "#CCCCCC", "#CCCCCC"]
    assert next_available_color(used, palette) == "#BBBBBB"


def test_ties_resolve_in_palette_order() -> None:
    palette = ("#AAAAAA", "#BBBBBB")
    assert next_available_color(["#BBBBBB", "#AAAAAA", None, ""], palette) == "#AAAAAA"


def test_empty_palette_is_rejected() -> None:
    with pytest.raises(ValueError):
        next_available_color([], ())
