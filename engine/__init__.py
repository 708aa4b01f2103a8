"""
Chart analytics package.

Pure functions over bar prefixes: indicator series for the replay chart and
key price levels for scenario context.
"""

from engine.indicators import compute_indicators, ema, vwap_bands
from engine.levels import calculate_all_levels, is_at_key_level

__all__ = ["compute_indicators", "ema", "vwap_bands", "calculate_all_levels", "is_at_key_level"]
