from typing import List

from src.engine.interfaces import ISystem
from src.engine.mechanics.infrastructure import advance_construction
from src.server.state import GameState
from src.shared.events import EventConstructionCompleted

class ConstructionSystem(ISystem):
    """
    Advances national and local builds by one tick.

    Responsibility:
    - Decrements 'construction_queue.remaining_ticks'
    - Materializes finished builds into 'infrastructure'
    - Emits 'EventConstructionCompleted'

    The tick is exclusive (GameSession holds the tick lock), so queue rows
    need no row locks here; nothing else writes them while a tick runs.
    """

    @property
    def id(self) -> str:
        return "base.construction"

    @property
    def dependencies(self) -> List[str]:
        return []

    def update(self, state: GameState) -> None:
        with state.table_lock:
            completed = advance_construction(state, state.tick.number)

        for build in completed:
            state.events.append(EventConstructionCompleted(
                territory=build.territory_id,
                type_key=build.type_key,
                instance_id=build.instance_id,
                capacity_bonus=build.capacity_bonus,
                stability_bonus=build.stability_bonus,
            ))

        state.tick.constructions_completed += len(completed)
        if completed:
            print(f"[System:Construction] {len(completed)} build(s) completed")
