"""Material canonicalization."""

from __future__ import annotations

from .rules import MaterialRules


def canonicalize_material(material: str, rules: MaterialRules) -> str:
    """Collapse marketing names to a canonical material.

    Variant rules run first so "PLA Silk", "PLA+" or "PETG-HF" stay distinct
    while "High Speed PLA" becomes plain "PLA". Then aliases are tried as an
    exact match, then as substrings in table order. Unknown materials come
    back upper-cased.
    """
    upper = material.strip().upper()
    if not upper:
        return upper

    for variant in rules.variants:
        if variant.match.matches(upper):
            return variant.canonical

    for alias, canonical in rules.aliases:
        if upper == alias:
            return canonical

    for alias, canonical in rules.aliases:
        if alias in upper:
            return canonical

    return upper


__all__ = ["canonicalize_material"]
