import polars as pl
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from src.engine.interfaces import ISystem
from src.engine.mechanics.laws import LawEffects
from src.engine.mechanics.population import (
    LocalMigration, apply_local_migration, grow_cells, local_attractiveness, local_migration,
)
from src.engine.mechanics.rounding import round_half_up
from src.engine.mechanics.stability import clamp_stability, stability_delta
from src.engine.mechanics.territory import (
    TerritoryEconomy, infrastructure_modifiers, run_territory_economy,
)
from src.server.state import GameState, set_row_values
from src.shared.events import (
    GameEvent, EventResourceCrisis, EventTerritoryFailed, EventWarehouseOverflow,
)
from src.shared.resources import ResourceKind, TerritoryLevel

@dataclass
class TerritoryReport:
    """Successful unit of work: everything to commit for one territory."""
    territory_id: str
    cells: pl.DataFrame
    stocks: Dict[ResourceKind, float]
    capacity: float
    stability: float
    rural_population: int
    urban_population: int
    cell_count: int
    city_count: int
    economy: TerritoryEconomy
    migration: LocalMigration
    events: List[GameEvent] = field(default_factory=list)

    def snapshot(self) -> Dict[str, Any]:
        eco = self.economy
        return {
            "territory_id": self.territory_id,
            "prod": {k.value: round_half_up(eco.production[k]) for k in ResourceKind},
            "cons": {k.value: round_half_up(eco.consumption[k])
                     for k in (ResourceKind.FOOD, ResourceKind.ENERGY, ResourceKind.TECH)},
            "crises": {k.value: eco.crises[k] for k in ResourceKind},
            "migration_net": self.migration.net,
            "global_migration": 0,
            "stability_after": self.stability,
            "overflow_lost": round_half_up(eco.effective_loss),
        }

@dataclass
class TerritoryFailure:
    territory_id: str
    stage: str
    error: str

TerritoryResult = Union[TerritoryReport, TerritoryFailure]


class TerritorySystem(ISystem):
    """
    Runs the per-territory pipeline:
    production -> capacity -> consumption -> crises -> growth -> local migration -> stability.

    Architecture Note:
        Each territory is an isolated unit of work. `_process` reads from the
        tables but never writes; it returns a TerritoryReport (ok) or a
        TerritoryFailure (err). Only after every territory has been
        processed are the reports committed, so a territory that fails
        halfway leaves no partial writes and never stops the others.
    """

    @property
    def id(self) -> str:
        return "base.territory"

    @property
    def dependencies(self) -> List[str]:
        return ["base.laws", "base.maintenance", "base.construction"]

    def update(self, state: GameState) -> None:
        # Order escrow writes the same warehouses; keep it out until commit.
        with state.table_lock:
            territories = state.get_table("territories").sort("id")
            results: List[TerritoryResult] = [
                self._process(state, territory) for territory in territories.iter_rows(named=True)
            ]
            reports = [r for r in results if isinstance(r, TerritoryReport)]
            self._commit(state, reports)

        for failure in (r for r in results if isinstance(r, TerritoryFailure)):
            print(f"[System:Territory] '{failure.territory_id}' failed at {failure.stage}: {failure.error}")
            state.tick.failures.append({
                "scope": failure.territory_id, "stage": failure.stage, "error": failure.error,
            })
            state.events.append(EventTerritoryFailed(
                territory=failure.territory_id, stage=failure.stage, error=failure.error,
            ))

        tick = state.tick
        for report in reports:
            state.events.extend(report.events)
            tick.per_state[report.territory_id] = report.snapshot()
            tick.territory_metrics[report.territory_id] = {
                "population": report.rural_population + report.urban_population,
                "stability": report.stability,
                "food_surplus": report.economy.surplus[ResourceKind.FOOD],
                "energy_surplus": report.economy.surplus[ResourceKind.ENERGY],
                "tech": report.stocks[ResourceKind.TECH],
            }
            tick.territories_processed += 1
            tick.cities_processed += report.city_count

        print(f"[System:Territory] Processed {len(reports)}/{len(results)} territories")

    # --- Unit of work ---

    def _process(self, state: GameState, territory: Dict[str, Any]) -> TerritoryResult:
        c = state.config
        territory_id = territory["id"]
        stage = "load"
        try:
            cells = state.get_table("cells").filter(pl.col("owner_territory_id") == territory_id).sort("id")
            city_count = self._count(state.tables.get("cities"), "owner_territory_id", territory_id)
            has_research = self._count(state.tables.get("research_queue"), "territory_id", territory_id) > 0
            stability = territory.get("stability")
            stability = c.default_stability if stability is None else float(stability)
            level = TerritoryLevel.parse(territory.get("level"))

            warehouse_row = state.find_row("resource_balances", "territory_id", territory_id) or {}
            warehouse = {k: float(warehouse_row.get(k.value) or 0.0) for k in ResourceKind}
            capacity = float(warehouse_row.get("capacity_total") or c.default_capacity)

            laws: LawEffects = state.tick.law_effects.get(territory_id) or LawEffects()
            infra = infrastructure_modifiers(
                state.tables.get("infrastructure", pl.DataFrame()),
                state.tables.get("infrastructure_types", pl.DataFrame()),
                territory_id, c,
            )

            # 1. Production -> capacity -> consumption -> crises
            stage = "economy"
            economy = run_territory_economy(
                cells, warehouse, capacity, stability, level, city_count,
                has_research, laws.production_bonus, infra, c,
            )
            events: List[GameEvent] = []
            if economy.overflow > 0:
                events.append(EventWarehouseOverflow(
                    territory=territory_id, overflow=economy.overflow,
                    effective_loss=economy.effective_loss, capacity=capacity,
                ))
            for kind in ResourceKind:
                if economy.crises[kind]:
                    events.append(EventResourceCrisis(
                        territory=territory_id, resource=kind.value, shortfall=economy.shortfall[kind],
                    ))

            # 2. Natural growth
            stage = "growth"
            population = self._population(cells)
            cells = grow_cells(cells, stability, economy.food_or_energy_crisis, c)

            # 3. Local migration
            stage = "migration"
            food_surplus = economy.surplus[ResourceKind.FOOD]
            energy_surplus = economy.surplus[ResourceKind.ENERGY]
            attractiveness = local_attractiveness(
                stability, food_surplus, energy_surplus, has_research,
                economy.crises[ResourceKind.FOOD], economy.crises[ResourceKind.ENERGY],
            )
            migration = local_migration(population, attractiveness, c)
            cells = apply_local_migration(cells, migration)

            # 4. Stability
            stage = "stability"
            delta = stability_delta(
                food_surplus, energy_surplus,
                economy.crises[ResourceKind.FOOD], economy.crises[ResourceKind.ENERGY],
                laws.popularity_bias, c,
            )
            new_stability = clamp_stability(stability + delta)

            rural, urban = self._buckets(cells)
            return TerritoryReport(
                territory_id=territory_id,
                cells=cells,
                stocks=economy.stocks,
                capacity=capacity,
                stability=new_stability,
                rural_population=rural,
                urban_population=urban,
                cell_count=cells.height,
                city_count=city_count,
                economy=economy,
                migration=migration,
                events=events,
            )
        except Exception as e:
            return TerritoryFailure(territory_id=territory_id, stage=stage, error=str(e))

    # --- Commit ---

    def _commit(self, state: GameState, reports: List[TerritoryReport]):
        if not reports:
            return

        tick_number = state.tick.number
        done = [r.territory_id for r in reports]

        # Cells: swap each processed territory's rows for the new ones.
        all_cells = state.get_table("cells")
        fresh = [r.cells for r in reports if not r.cells.is_empty()]
        untouched = all_cells.filter(~pl.col("owner_territory_id").is_in(done) | pl.col("owner_territory_id").is_null())
        state.update_table("cells", pl.concat([untouched, *fresh], how="diagonal_relaxed").sort("id"))

        territories = state.get_table("territories")
        balances = state.get_table("resource_balances")
        missing_warehouses = []

        for r in reports:
            territories = set_row_values(territories, "id", r.territory_id, {
                "stability": r.stability,
                "total_rural_population": r.rural_population,
                "total_urban_population": r.urban_population,
                "cells_owned_count": r.cell_count,
                "cities_owned_count": r.city_count,
            })

            values = {k.value: r.stocks[k] for k in ResourceKind}
            values["tick_number"] = tick_number
            if balances.filter(pl.col("territory_id") == r.territory_id).is_empty():
                missing_warehouses.append({"territory_id": r.territory_id, **values, "capacity_total": r.capacity})
            else:
                balances = set_row_values(balances, "territory_id", r.territory_id, values)

        state.update_table("territories", territories)
        state.update_table("resource_balances", balances)
        state.append_rows("resource_balances", missing_warehouses)

    # --- Helpers ---

    @staticmethod
    def _count(df: Optional[pl.DataFrame], column: str, territory_id: str) -> int:
        if df is None or df.is_empty():
            return 0
        return df.filter(pl.col(column) == territory_id).height

    @staticmethod
    def _buckets(cells: pl.DataFrame):
        if cells.is_empty():
            return 0, 0
        return (
            int(cells.get_column("rural_population").fill_null(0).sum()),
            int(cells.get_column("urban_population").fill_null(0).sum()),
        )

    def _population(self, cells: pl.DataFrame) -> int:
        rural, urban = self._buckets(cells)
        return rural + urban
