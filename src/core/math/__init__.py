"""
Core math modules

Целочисленные примитивы с гарантией детерминизма.
"""

from src.core.math.fixed_point import (
    BPS_SCALE,
    U64_MAX,
    apply_bps,
    format_bps,
    mul_div_ceil,
    mul_div_floor,
    ratio_bps,
    validate_non_negative_int,
    value_at_price,
)

__all__ = [
    # Constants
    "BPS_SCALE",
    "U64_MAX",
    # Functions
    "apply_bps",
    "format_bps",
    "mul_div_ceil",
    "mul_div_floor",
    "ratio_bps",
    "validate_non_negative_int",
    "value_at_price",
]
