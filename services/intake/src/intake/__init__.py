"""Spool photo intake: vision extraction, normalization and upload reconciliation."""

__all__ = ["__version__"]

__version__ = "1.0.0"
