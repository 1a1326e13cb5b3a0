import math
import polars as pl
from dataclasses import dataclass, field
from typing import Dict, List

from src.shared.config import WorldConfig
from src.engine.mechanics.population import distribute, shift_population
from src.engine.mechanics.rounding import round_half_up

@dataclass
class MigrationCandidate:
    territory_id: str
    population: int
    stability: float
    food_surplus: float
    energy_surplus: float
    tech: float

@dataclass
class MigrationPlan:
    """
    Result of one global redistribution round.
    `flows` is signed per territory and always sums to zero.
    """
    average: float = 0.0
    attractiveness: Dict[str, float] = field(default_factory=dict)
    flows: Dict[str, int] = field(default_factory=dict)

    @property
    def total_outflow(self) -> int:
        return -sum(v for v in self.flows.values() if v < 0)

    @property
    def total_inflow(self) -> int:
        return sum(v for v in self.flows.values() if v > 0)


def global_attractiveness(c: MigrationCandidate) -> float:
    return (
        c.stability
        + min(10.0, c.food_surplus / 10000)
        + min(10.0, c.energy_surplus / 10000)
        + min(10.0, c.tech / 5000)
    )


def apportion(total: int, weights: List[float]) -> List[int]:
    """
    Largest-remainder split of a non-negative integer over float weights.
    """
    weight_sum = sum(weights)
    if total <= 0 or weight_sum <= 0:
        return [0] * len(weights)
    raw = [total * w / weight_sum for w in weights]
    parts = [math.floor(r) for r in raw]
    leftover = total - sum(parts)
    order = sorted(range(len(weights)), key=lambda i: raw[i] - parts[i], reverse=True)
    for i in order[:leftover]:
        parts[i] += 1
    return parts


def plan_redistribution(candidates: List[MigrationCandidate], config: WorldConfig) -> MigrationPlan:
    """
    Moves population from less to more attractive territories.

    Logic:
        1. Population-weighted average attractiveness.
        2. Territories below it lose pop * rate * (avg - attr) / 10,
           capped at `global_migration_cap` of their population.
        3. Territories above it get a nominal share pop * rate * (attr - avg) / 10,
           rescaled so that total inflow == total outflow.

    Population is conserved exactly: the outflows are whole people and the
    inflow split uses largest remainder over the same total.
    """
    plan = MigrationPlan()
    total_pop = sum(max(0, c.population) for c in candidates)
    if total_pop <= 0:
        return plan

    plan.attractiveness = {c.territory_id: global_attractiveness(c) for c in candidates}
    plan.average = sum(max(0, c.population) * plan.attractiveness[c.territory_id] for c in candidates) / total_pop
    avg = plan.average

    # 1. Outflows
    outflows: Dict[str, int] = {}
    for c in candidates:
        attr = plan.attractiveness[c.territory_id]
        if attr >= avg or c.population <= 0:
            continue
        nominal = c.population * config.global_migration_rate * (avg - attr) / 10
        cap = math.floor(c.population * config.global_migration_cap)
        leaving = min(round_half_up(nominal), cap)
        if leaving > 0:
            outflows[c.territory_id] = leaving

    total_out = sum(outflows.values())
    receivers = [
        c for c in candidates
        if plan.attractiveness[c.territory_id] > avg and c.population > 0
    ]
    if total_out == 0 or not receivers:
        return plan

    # 2. Inflows, rescaled to match the outflow mass
    weights = [
        c.population * config.global_migration_rate * (plan.attractiveness[c.territory_id] - avg) / 10
        for c in receivers
    ]
    inflows = apportion(total_out, weights)

    for territory_id, leaving in outflows.items():
        plan.flows[territory_id] = -leaving
    for c, arriving in zip(receivers, inflows):
        if arriving:
            plan.flows[c.territory_id] = arriving

    return plan


def apply_flow(cells: pl.DataFrame, flow: int, config: WorldConfig) -> pl.DataFrame:
    """
    Applies a territory's net flow to its cells.

    Emigrants leave each bucket in proportion to its size, so nobody is
    asked to leave a bucket that is already empty. Immigrants settle with
    the same urban/rural split as local migration.
    """
    if cells.is_empty() or flow == 0:
        return cells

    urban_total = int(cells.get_column("urban_population").fill_null(0).sum())
    rural_total = int(cells.get_column("rural_population").fill_null(0).sum())

    if flow < 0:
        urban_change, rural_change = distribute([urban_total, rural_total], flow)
    else:
        urban_change = round_half_up(flow * config.local_migration_urban_share)
        rural_change = flow - urban_change

    cells = shift_population(cells, "urban_population", urban_change)
    return shift_population(cells, "rural_population", rural_change)
