"""Immutable lookup tables that drive the normalization engine.

The tables are domain data, not logic: they ship as ``normalization_rules.yaml``
next to this module and can be replaced wholesale through
``Settings.rules_path``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import yaml

from common.logging import get_logger

LOGGER = get_logger(__name__)

BUNDLED_RULES = "normalization_rules.yaml"

Interval = Tuple[Optional[float], Optional[float]]


def _upper_tokens(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    return tuple(str(value).upper() for value in (values or ()))


def _lower_tokens(values: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    return tuple(str(value).lower() for value in (values or ()))


@dataclass(frozen=True)
class TokenMatch:
    """Substring predicate over an upper-cased material and a lower-cased product name."""

    all_of: Tuple[str, ...] = ()
    any_of: Tuple[str, ...] = ()
    none_of: Tuple[str, ...] = ()
    name_any: Tuple[str, ...] = ()

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "TokenMatch":
        return cls(
            all_of=_upper_tokens(raw.get("all")),
            any_of=_upper_tokens(raw.get("any")),
            none_of=_upper_tokens(raw.get("none")),
            name_any=_lower_tokens(raw.get("name_any")),
        )

    def matches(self, material: str, name: str = "") -> bool:
        if any(token not in material for token in self.all_of):
            return False
        if self.any_of and not any(token in material for token in self.any_of):
            return False
        if any(token in material for token in self.none_of):
            return False
        if self.name_any and not any(token in name for token in self.name_any):
            return False
        return True


@dataclass(frozen=True)
class MaterialVariant:
    match: TokenMatch
    canonical: str


@dataclass(frozen=True)
class MaterialRules:
    variants: Tuple[MaterialVariant, ...] = ()
    aliases: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class PrintSettings:
    print_speed: Optional[str] = None
    print_temp: Optional[str] = None
    bed_temp: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "PrintSettings":
        raw = raw or {}
        return cls(
            print_speed=raw.get("print_speed"),
            print_temp=raw.get("print_temp"),
            bed_temp=raw.get("bed_temp"),
        )


@dataclass(frozen=True)
class PrintRule:
    match: TokenMatch
    settings: PrintSettings


@dataclass(frozen=True)
class PrintTable:
    rules: Tuple[PrintRule, ...] = ()
    default: PrintSettings = field(default_factory=PrintSettings)

    def lookup(self, material: str, name: str) -> PrintSettings:
        for rule in self.rules:
            if rule.match.matches(material, name):
                return rule.settings
        return self.default


@dataclass(frozen=True)
class BrandPrintTable:
    brand: Tuple[str, ...]
    table: PrintTable


@dataclass(frozen=True)
class PriceRule:
    match: TokenMatch
    per_kg: float


@dataclass(frozen=True)
class PriceTable:
    rules: Tuple[PriceRule, ...] = ()
    default: float = 20.0

    def lookup(self, material: str, name: str) -> float:
        for rule in self.rules:
            if rule.match.matches(material, name):
                return rule.per_kg
        return self.default


@dataclass(frozen=True)
class BrandPriceTable:
    brand: Tuple[str, ...]
    table: PriceTable


@dataclass(frozen=True)
class ColorRule:
    """Upgrade a generic color name when the RGB components fall in open intervals."""

    names: Tuple[str, ...]
    result: str
    r: Interval = (None, None)
    g: Interval = (None, None)
    b: Interval = (None, None)
    max_rb_gap: Optional[float] = None

    def applies(self, name: str, rgb: Tuple[int, int, int]) -> bool:
        if name not in self.names:
            return False
        for value, (low, high) in zip(rgb, (self.r, self.g, self.b)):
            if low is not None and not value > low:
                return False
            if high is not None and not value < high:
                return False
        if self.max_rb_gap is not None and not abs(rgb[0] - rgb[2]) < self.max_rb_gap:
            return False
        return True


@dataclass(frozen=True)
class NormalizationRuleSet:
    materials: MaterialRules
    brand_print: Tuple[BrandPrintTable, ...]
    material_print: PrintTable
    brand_prices: Tuple[BrandPriceTable, ...]
    generic_prices: PriceTable
    colors: Tuple[ColorRule, ...]
    default_weight_kg: float = 1.0


def _interval(raw: Any) -> Interval:
    if not raw:
        return (None, None)
    low, high = raw
    return (
        float(low) if low is not None else None,
        float(high) if high is not None else None,
    )


def _print_table(raw: Optional[Mapping[str, Any]]) -> PrintTable:
    raw = raw or {}
    rules = tuple(
        PrintRule(match=TokenMatch.from_mapping(item), settings=PrintSettings.from_mapping(item))
        for item in raw.get("rules", [])
    )
    return PrintTable(rules=rules, default=PrintSettings.from_mapping(raw.get("default")))


def _price_table(raw: Optional[Mapping[str, Any]], fallback: float) -> PriceTable:
    raw = raw or {}
    rules = tuple(
        PriceRule(match=TokenMatch.from_mapping(item), per_kg=float(item["per_kg"]))
        for item in raw.get("rules", [])
    )
    return PriceTable(rules=rules, default=float(raw.get("default", fallback)))


def build_rule_set(raw: Mapping[str, Any]) -> NormalizationRuleSet:
    """Build an immutable rule set from parsed YAML/JSON data."""
    materials_raw = raw.get("materials", {})
    materials = MaterialRules(
        variants=tuple(
            MaterialVariant(match=TokenMatch.from_mapping(item), canonical=str(item["canonical"]))
            for item in materials_raw.get("variants", [])
        ),
        aliases=tuple(
            (str(key).upper(), str(value)) for key, value in materials_raw.get("aliases", {}).items()
        ),
    )

    print_raw = raw.get("print_defaults", {})
    brand_print = tuple(
        BrandPrintTable(brand=_lower_tokens(item["brand"]), table=_print_table(item))
        for item in print_raw.get("brands", [])
    )

    pricing_raw = raw.get("pricing", {})
    generic_prices = _price_table(pricing_raw.get("generic"), fallback=20.0)
    brand_prices = tuple(
        BrandPriceTable(
            brand=_lower_tokens(item["brand"]),
            table=_price_table(item, fallback=generic_prices.default),
        )
        for item in pricing_raw.get("brands", [])
    )

    colors = tuple(
        ColorRule(
            names=_lower_tokens(item["names"]),
            result=str(item["result"]),
            r=_interval(item.get("r")),
            g=_interval(item.get("g")),
            b=_interval(item.get("b")),
            max_rb_gap=item.get("max_rb_gap"),
        )
        for item in raw.get("colors", [])
    )

    return NormalizationRuleSet(
        materials=materials,
        brand_print=brand_print,
        material_print=_print_table(print_raw.get("materials")),
        brand_prices=brand_prices,
        generic_prices=generic_prices,
        colors=colors,
        default_weight_kg=float(pricing_raw.get("default_weight_kg", 1.0)),
    )


def _read_bundled() -> Dict[str, Any]:
    text = resources.files(__package__).joinpath(BUNDLED_RULES).read_text(encoding="utf-8")
    return yaml.safe_load(text) or {}


def load_rule_set(path: Optional[Path] = None) -> NormalizationRuleSet:
    """Load rule tables from ``path``; fall back to the bundled tables.

    A missing or unreadable override is logged and ignored so a bad deploy
    never stops extraction.
    """
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
            rule_set = build_rule_set(raw)
            LOGGER.info("Loaded normalization rules", path=str(path))
            return rule_set
        except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Failed to load normalization rules", path=str(path), error=str(exc))

    return build_rule_set(_read_bundled())


__all__ = [
    "BrandPriceTable",
    "BrandPrintTable",
    "ColorRule",
    "MaterialRules",
    "MaterialVariant",
    "NormalizationRuleSet",
    "PriceTable",
    "PrintSettings",
    "PrintTable",
    "TokenMatch",
    "build_rule_set",
    "load_rule_set",
]
