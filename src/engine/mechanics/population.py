import polars as pl
from dataclasses import dataclass
from typing import List

from src.engine.mechanics.rounding import half_up, round_half_up
from src.shared.config import WorldConfig

@dataclass
class LocalMigration:
    attractiveness: float
    net: int
    urban_change: int
    rural_change: int


def grow_cells(cells: pl.DataFrame, stability: float, crisis: bool, config: WorldConfig) -> pl.DataFrame:
    """
    Applies one tick of natural growth to every cell of a territory.

    Formula:
        growth = total * base_rate * habitability * (0.5 + stability / 100)
        A food or energy crisis inverts and halves it (the population shrinks).

    The growth is split between rural and urban using fertility and
    urbanization pull as relative weights. Whole people only: the rounded
    total is kept, and the rounding difference lands in the bucket that
    received the larger share.
    """
    if cells.is_empty():
        return cells

    c = config
    sign = c.crisis_growth_factor if crisis else 1.0

    rural = pl.col("rural_population").fill_null(0)
    urban = pl.col("urban_population").fill_null(0)
    fertility = pl.col("fertility").fill_null(0.0)
    pull = pl.col("urbanization_pull").fill_null(0.0)

    upd = cells.with_columns([
        ((rural + urban) * c.growth_base_rate
         * pl.col("habitability").fill_null(c.default_habitability)
         * (0.5 + stability / 100) * sign).alias("_growth"),
        pl.when((fertility + pull) > 0)
        .then(fertility / (fertility + pull))
        .otherwise(0.5)
        .alias("_rural_share"),
    ])

    upd = upd.with_columns([
        half_up(pl.col("_growth")).alias("_total"),
        (pl.col("_growth") * pl.col("_rural_share")).alias("_rural_raw"),
        (pl.col("_growth") * (1 - pl.col("_rural_share"))).alias("_urban_raw"),
    ])

    # The smaller bucket is rounded on its own; the larger one takes the rest.
    upd = upd.with_columns(
        pl.when(pl.col("_rural_share") >= 0.5)
        .then(pl.col("_total") - half_up(pl.col("_urban_raw")))
        .otherwise(half_up(pl.col("_rural_raw")))
        .alias("_rural_delta")
    ).with_columns(
        (pl.col("_total") - pl.col("_rural_delta")).alias("_urban_delta")
    )

    upd = upd.with_columns([
        (rural + pl.col("_rural_delta")).clip(lower_bound=0).cast(pl.Int64).alias("rural_population"),
        (urban + pl.col("_urban_delta")).clip(lower_bound=0).cast(pl.Int64).alias("urban_population"),
    ])

    # Drop temporary columns to keep state clean
    return upd.drop(["_growth", "_rural_share", "_total", "_rural_raw", "_urban_raw",
                     "_rural_delta", "_urban_delta"])


def distribute(weights: List[int], delta: int) -> List[int]:
    """
    Splits an integer `delta` over buckets proportionally to `weights`
    (largest remainder), so the parts always add up to exactly `delta`.

    For negative deltas no bucket goes below zero; the caller must not ask
    for more than sum(weights).
    """
    n = len(weights)
    if n == 0 or delta == 0:
        return [0] * n

    total = sum(weights)
    if total <= 0:
        if delta < 0:
            return [0] * n
        # Nobody lives here yet: spread evenly.
        weights = [1] * n
        total = n

    magnitude = abs(delta)
    if delta < 0:
        magnitude = min(magnitude, total)

    raw = [magnitude * w / total for w in weights]
    parts = [int(r) for r in raw]
    leftover = magnitude - sum(parts)
    order = sorted(range(n), key=lambda i: (raw[i] - parts[i], weights[i]), reverse=True)
    for i in order:
        if leftover <= 0:
            break
        if delta < 0 and parts[i] >= weights[i]:
            continue
        parts[i] += 1
        leftover -= 1

    sign = 1 if delta > 0 else -1
    return [sign * p for p in parts]


def shift_population(cells: pl.DataFrame, column: str, delta: int) -> pl.DataFrame:
    """Adds `delta` people to `column`, spread over the cells by current size."""
    if cells.is_empty() or delta == 0:
        return cells
    current = cells.get_column(column).fill_null(0).to_list()
    parts = distribute(current, delta)
    return cells.with_columns(
        pl.Series(column, [max(0, v + d) for v, d in zip(current, parts)], dtype=pl.Int64)
    )


def local_attractiveness(stability: float, food_surplus: float, energy_surplus: float,
                         has_research: bool, food_crisis: bool, energy_crisis: bool) -> float:
    score = stability
    score += 2 if food_surplus > 0 else -2
    score += 2 if energy_surplus > 0 else -2
    score += 1 if has_research else 0
    if food_crisis:
        score -= 6
    if energy_crisis:
        score -= 4
    return score


def local_migration(total_population: int, attractiveness: float, config: WorldConfig) -> LocalMigration:
    """
    Net arrivals (+) or departures (-) from outside the tracked territories.
    Magnitude never exceeds `local_migration_cap` of the population.
    """
    cap = total_population * config.local_migration_cap
    net = round_half_up((attractiveness - 50) / 50 * cap)
    net = int(max(-cap, min(cap, net)))
    urban_change = round_half_up(net * config.local_migration_urban_share)
    return LocalMigration(
        attractiveness=attractiveness,
        net=net,
        urban_change=urban_change,
        rural_change=net - urban_change,
    )


def apply_local_migration(cells: pl.DataFrame, migration: LocalMigration) -> pl.DataFrame:
    cells = shift_population(cells, "urban_population", migration.urban_change)
    return shift_population(cells, "rural_population", migration.rural_change)
