"""Deterministic post-processing of raw extraction results."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from functools import lru_cache
from typing import Any, Dict, Optional

from ..schemas import ExtractionResult
from .colors import refine_color_name
from .materials import canonicalize_material
from .rules import NormalizationRuleSet, PrintSettings, load_rule_set

DIAMETER_RANGE = (0.0, 10.0)
WEIGHT_RANGE = (0.0, 100.0)

_CENT = Decimal("0.01")


def _in_open_range(value: Optional[float], bounds: tuple[float, float]) -> bool:
    return value is not None and bounds[0] < value < bounds[1]


class Normalizer:
    """Fill and tidy an :class:`ExtractionResult` from static rule tables.

    ``normalize`` is referentially transparent: it reads only its argument
    and the immutable rule set, and returns a new result.
    """

    def __init__(self, rules: NormalizationRuleSet) -> None:
        self.rules = rules

    def normalize(self, raw: ExtractionResult) -> ExtractionResult:
        updates: Dict[str, Any] = {}

        material = raw.material
        if material:
            material = canonicalize_material(material, self.rules.materials) or None
            updates["material"] = material

        if raw.manufacturer:
            defaults = self.print_defaults(raw.manufacturer, material, raw.name)
            for field_name in ("print_speed", "print_temp", "bed_temp"):
                if getattr(raw, field_name) is None and getattr(defaults, field_name):
                    updates[field_name] = getattr(defaults, field_name)

        if raw.color_code and raw.color_name:
            updates["color_name"] = refine_color_name(
                raw.color_name, raw.color_code, self.rules.colors
            )

        diameter = raw.diameter if _in_open_range(raw.diameter, DIAMETER_RANGE) else None
        weight = raw.total_weight if _in_open_range(raw.total_weight, WEIGHT_RANGE) else None
        updates["diameter"] = diameter
        updates["total_weight"] = weight

        if raw.estimated_price is None or raw.estimated_price <= 0:
            updates["estimated_price"] = self.estimate_price(raw.manufacturer, material, raw.name, weight)

        return raw.model_copy(update=updates)

    def print_defaults(
        self, manufacturer: str, material: Optional[str], name: Optional[str]
    ) -> PrintSettings:
        """Resolve each print field from the brand table, then the material table."""
        brand = manufacturer.lower()
        mat = (material or "PLA").upper()
        product = (name or "").lower()

        by_material = self.rules.material_print.lookup(mat, product)
        for entry in self.rules.brand_print:
            if any(token in brand for token in entry.brand):
                by_brand = entry.table.lookup(mat, product)
                return PrintSettings(
                    print_speed=by_brand.print_speed or by_material.print_speed,
                    print_temp=by_brand.print_temp or by_material.print_temp,
                    bed_temp=by_brand.bed_temp or by_material.bed_temp,
                )
        return by_material

    def estimate_price(
        self,
        manufacturer: Optional[str],
        material: Optional[str],
        name: Optional[str],
        weight_kg: Optional[float],
    ) -> float:
        """Price per kilogram from the brand (or generic) table times spool weight."""
        brand = (manufacturer or "").lower()
        mat = (material or "PLA").upper()
        product = (name or "").lower()

        table = self.rules.generic_prices
        if brand:
            for entry in self.rules.brand_prices:
                if any(token in brand for token in entry.brand):
                    table = entry.table
                    break

        per_kg = Decimal(str(table.lookup(mat, product)))
        kg = Decimal(str(weight_kg or self.rules.default_weight_kg))
        return float((per_kg * kg).quantize(_CENT, rounding=ROUND_HALF_UP))


@lru_cache(maxsize=1)
def default_normalizer() -> Normalizer:
    """Normalizer over the bundled rule tables."""
    return Normalizer(load_rule_set())


def normalize(raw: ExtractionResult, rules: Optional[NormalizationRuleSet] = None) -> ExtractionResult:
    """Normalize ``raw`` with ``rules`` or the bundled tables."""
    normalizer = Normalizer(rules) if rules is not None else default_normalizer()
    return normalizer.normalize(raw)


__all__ = ["DIAMETER_RANGE", "Normalizer", "WEIGHT_RANGE", "default_normalizer", "normalize"]
