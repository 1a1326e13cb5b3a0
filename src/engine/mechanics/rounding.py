import math
import polars as pl


def round_half_up(value: float) -> int:
    """Nearest integer, halves towards +infinity (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def half_up(expr: pl.Expr) -> pl.Expr:
    """Column version of `round_half_up`, kept as Float64."""
    return (expr + 0.5).floor()
