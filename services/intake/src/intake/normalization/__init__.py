"""Normalization engine for extracted spool attributes."""

from .colors import parse_hex, refine_color_name
from .engine import Normalizer, default_normalizer, normalize
from .materials import canonicalize_material
from .rules import NormalizationRuleSet, build_rule_set, load_rule_set

__all__ = [
    "NormalizationRuleSet",
    "Normalizer",
    "build_rule_set",
    "canonicalize_material",
    "default_normalizer",
    "load_rule_set",
    "normalize",
    "parse_hex",
    "refine_color_name",
]
