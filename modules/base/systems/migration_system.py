import polars as pl
from typing import List

from src.engine.interfaces import ISystem
from src.engine.mechanics.migration import MigrationCandidate, apply_flow, plan_redistribution
from src.server.state import GameState, set_row_values
from src.shared.events import EventMigration

class MigrationSystem(ISystem):
    """
    Global population redistribution between territories.

    Runs once all territories have been processed locally and only moves
    people between territories that completed this tick. Total population
    across them is conserved.
    """

    @property
    def id(self) -> str:
        return "base.migration"

    @property
    def dependencies(self) -> List[str]:
        return ["base.territory"]

    def update(self, state: GameState) -> None:
        metrics = state.tick.territory_metrics
        if len(metrics) < 2:
            return

        candidates = [
            MigrationCandidate(
                territory_id=territory_id,
                population=int(m["population"]),
                stability=m["stability"],
                food_surplus=m["food_surplus"],
                energy_surplus=m["energy_surplus"],
                tech=m["tech"],
            )
            for territory_id, m in sorted(metrics.items())
        ]
        plan = plan_redistribution(candidates, state.config)
        if not plan.flows:
            return

        cells = state.get_table("cells")
        territories = state.get_table("territories")
        for territory_id, flow in sorted(plan.flows.items()):
            mask = pl.col("owner_territory_id") == territory_id
            owned = apply_flow(cells.filter(mask).sort("id"), flow, state.config)
            cells = pl.concat([cells.filter(~mask | mask.is_null()), owned], how="diagonal_relaxed")

            territories = set_row_values(territories, "id", territory_id, {
                "total_rural_population": int(owned.get_column("rural_population").sum()),
                "total_urban_population": int(owned.get_column("urban_population").sum()),
            })

            snapshot = state.tick.per_state.get(territory_id)
            if snapshot is not None:
                snapshot["global_migration"] = flow

            if abs(flow) > state.config.migration_event_threshold:
                state.events.append(EventMigration(
                    territory=territory_id,
                    net_flow=flow,
                    attractiveness=plan.attractiveness[territory_id],
                    average=plan.average,
                ))

        state.update_table("cells", cells.sort("id"))
        state.update_table("territories", territories)
        print(f"[System:Migration] Moved {plan.total_outflow} people (avg attractiveness {plan.average:.1f})")
