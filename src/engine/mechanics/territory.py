import math
import polars as pl
from dataclasses import dataclass, field
from typing import Dict, Optional

from src.shared.config import WorldConfig
from src.shared.resources import ResourceKind, zero_resources

Resources = Dict[ResourceKind, float]

@dataclass
class InfraModifiers:
    """
    Aggregated effect of a territory's active infrastructure instances.
    """
    production_bonus: Resources = field(default_factory=zero_resources)
    waste_reduction: float = 0.0

@dataclass
class CapacityResult:
    stocks: Resources
    overflow: float = 0.0
    effective_loss: float = 0.0

@dataclass
class TerritoryEconomy:
    """
    Outcome of the production -> capacity -> consumption -> crisis stages
    for one territory in one tick.
    """
    production: Resources
    consumption: Resources
    stocks: Resources
    crises: Dict[ResourceKind, bool]
    surplus: Resources
    shortfall: Resources
    overflow: float = 0.0
    effective_loss: float = 0.0

    @property
    def food_or_energy_crisis(self) -> bool:
        return self.crises[ResourceKind.FOOD] or self.crises[ResourceKind.ENERGY]


def stability_factor(stability: float, config: WorldConfig) -> float:
    """0.6 at stability 0, 1.4 at stability 100 (with default tuning)."""
    return config.stability_factor_base + stability / 100 * config.stability_factor_span


def infrastructure_modifiers(instances: pl.DataFrame, types: pl.DataFrame, territory_id: str,
                             config: WorldConfig) -> InfraModifiers:
    """
    Sums the bonuses of every ACTIVE instance owned by the territory.

    Each instance adds its type's percentage to one resource; the total per
    resource is capped at `infra_bonus_cap`. Waste reduction (logistics)
    stacks the same way up to `waste_reduction_cap`.
    """
    mods = InfraModifiers()
    if instances.is_empty() or types.is_empty():
        return mods

    active = (
        instances
        .filter((pl.col("territory_id") == territory_id) & (pl.col("status") == "active"))
        .join(types, left_on="type_key", right_on="key", how="inner")
    )

    for row in active.iter_rows(named=True):
        resource = row.get("bonus_resource")
        if resource:
            mods.production_bonus[ResourceKind(resource)] += row.get("production_bonus") or 0.0
        mods.waste_reduction += row.get("waste_reduction") or 0.0

    for kind in ResourceKind:
        mods.production_bonus[kind] = min(mods.production_bonus[kind], config.infra_bonus_cap)
    mods.waste_reduction = min(mods.waste_reduction, config.waste_reduction_cap)
    return mods


def base_production(cells: pl.DataFrame, city_count: int, config: WorldConfig) -> Resources:
    """
    Raw per-tick output of a territory's cells, before any multiplier.

    Only the active share of each population bucket works. Every cell also
    receives the flat city energy bonus.
    """
    if cells.is_empty():
        return zero_resources()

    c = config
    rural = pl.col("rural_population").fill_null(0) * c.activity_fraction
    urban = pl.col("urban_population").fill_null(0) * c.activity_fraction

    def attr(name: str) -> pl.Expr:
        return pl.col(name).fill_null(0.0)

    habitability = (
        pl.col("habitability").fill_null(c.default_habitability)
        .clip(c.tech_habitability_min, c.tech_habitability_max)
    )

    totals = cells.select([
        (rural * (attr("fertility") * c.food_fertility_yield + attr("node_food") * c.food_node_yield))
        .sum().alias("food"),
        ((rural * c.mineral_rural_yield + urban * c.mineral_urban_yield)
         * (attr("mineral_richness") + attr("node_minerals")))
        .sum().alias("minerals"),
        (urban * c.energy_urban_yield * (attr("energy_potential") + attr("node_energy"))
         + city_count * c.energy_city_bonus)
        .sum().alias("energy"),
        (urban * c.tech_urban_yield * (attr("urbanization_pull") + attr("node_tech")) * habitability)
        .sum().alias("tech"),
    ]).row(0, named=True)

    return {kind: float(totals[kind.value] or 0.0) for kind in ResourceKind}


def apply_modifiers(base: Resources, law_bonus: Resources, stab_factor: float,
                    infra: InfraModifiers) -> Resources:
    return {
        kind: base[kind]
        * (1 + law_bonus.get(kind, 0.0))
        * stab_factor
        * (1 + infra.production_bonus.get(kind, 0.0))
        for kind in ResourceKind
    }


def apply_capacity(stocks: Resources, capacity: float, waste_reduction: float = 0.0) -> CapacityResult:
    """
    Scales all resources down proportionally when the warehouse is over capacity.

    The destroyed amount is gone for good. Logistics infrastructure does not
    save goods; it only reduces the loss reported to the player.
    """
    total = sum(stocks.values())
    if total <= capacity or total <= 0:
        return CapacityResult(stocks=dict(stocks))

    ratio = capacity / total
    # Round down on a 1e-6 grid so the float sum never creeps above capacity.
    scaled = {kind: math.floor(value * ratio * 1e6) / 1e6 for kind, value in stocks.items()}
    overflow = total - capacity
    return CapacityResult(
        stocks=scaled,
        overflow=overflow,
        effective_loss=overflow * (1 - waste_reduction),
    )


def consumption(population: int, city_count: int, level: str, has_research: bool,
                config: WorldConfig) -> Resources:
    needs = zero_resources()
    needs[ResourceKind.FOOD] = population * config.food_per_capita
    needs[ResourceKind.ENERGY] = population * config.energy_per_capita + city_count * config.energy_per_city
    if has_research:
        needs[ResourceKind.TECH] = config.level_factor(level) * config.tech_research_cost
    return needs


def run_territory_economy(
    cells: pl.DataFrame,
    warehouse: Resources,
    capacity: float,
    stability: float,
    level: str,
    city_count: int,
    has_research: bool,
    law_bonus: Optional[Resources],
    infra: Optional[InfraModifiers],
    config: WorldConfig,
) -> TerritoryEconomy:
    """
    Production -> capacity -> consumption -> crisis detection.

    Pure function of its inputs: the same snapshot always yields the same
    production, consumption and crisis outcome.
    """
    infra = infra or InfraModifiers()
    law_bonus = law_bonus or zero_resources()

    # 1. Production
    base = base_production(cells, city_count, config)
    produced = apply_modifiers(base, law_bonus, stability_factor(stability, config), infra)

    # 2. Warehouse capacity
    stocked = {kind: warehouse.get(kind, 0.0) + produced[kind] for kind in ResourceKind}
    capped = apply_capacity(stocked, capacity, infra.waste_reduction)

    # 3. Consumption
    population = int(
        cells.select(
            (pl.col("rural_population").fill_null(0) + pl.col("urban_population").fill_null(0)).sum()
        ).item()
    ) if not cells.is_empty() else 0
    needs = consumption(population, city_count, level, has_research, config)

    # 4. Crisis detection (negative balance -> crisis, clamp to zero)
    stocks: Resources = {}
    shortfall: Resources = {}
    crises: Dict[ResourceKind, bool] = {}
    for kind in ResourceKind:
        remaining = capped.stocks[kind] - needs[kind]
        crises[kind] = remaining < 0
        stocks[kind] = max(0.0, remaining)
        shortfall[kind] = max(0.0, -remaining)

    # Surplus = what is left after also covering next tick's needs.
    surplus = {kind: stocks[kind] - needs[kind] for kind in ResourceKind}

    return TerritoryEconomy(
        production=produced,
        consumption=needs,
        stocks=stocks,
        crises=crises,
        surplus=surplus,
        shortfall=shortfall,
        overflow=capped.overflow,
        effective_loss=capped.effective_loss,
    )
