import polars as pl
from typing import List

from src.engine.interfaces import ISystem
from src.engine.mechanics.laws import aggregate_laws
from src.server.state import GameState
from src.shared.events import EventLawRejected

class LawSystem(ISystem):
    """
    Reduces enacted national laws to numeric effects for this tick.
    Laws are read-only here; the result lives in `state.tick.law_effects`.
    A law with broken tags only costs its own territory that law.
    """

    @property
    def id(self) -> str:
        return "base.laws"

    @property
    def dependencies(self) -> List[str]:
        return ["base.maintenance"]

    def update(self, state: GameState) -> None:
        laws = state.tables.get("laws", pl.DataFrame())
        effects = aggregate_laws(laws, state.config)
        state.tick.law_effects = effects

        for territory_id, agg in effects.items():
            for law_id, error in agg.rejected.items():
                state.events.append(EventLawRejected(territory=territory_id, law_id=law_id, error=error))
