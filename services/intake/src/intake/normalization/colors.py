"""Color name refinement from hex codes."""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from .rules import ColorRule

RGB = Tuple[int, int, int]


def parse_hex(color_code: str) -> Optional[RGB]:
    """Parse ``#RRGGBB`` into its components; None for anything else."""
    hex_code = color_code.strip().lstrip("#")
    if len(hex_code) != 6:
        return None
    try:
        return (
            int(hex_code[0:2], 16),
            int(hex_code[2:4], 16),
            int(hex_code[4:6], 16),
        )
    except ValueError:
        return None


def refine_color_name(color_name: str, color_code: str, rules: Iterable[ColorRule]) -> str:
    """Upgrade generic names such as "pink" to "Magenta" when the RGB agrees.

    The name is returned unchanged when the code cannot be parsed or no rule
    matches.
    """
    rgb = parse_hex(color_code)
    if rgb is None:
        return color_name

    key = color_name.strip().lower()
    for rule in rules:
        if rule.applies(key, rgb):
            return rule.result
    return color_name


__all__ = ["parse_hex", "refine_color_name"]
