from typing import List

from src.engine.interfaces import ISystem
from src.engine.mechanics.infrastructure import charge_maintenance
from src.server.state import GameState
from src.shared.events import EventInfrastructurePaused

class MaintenanceSystem(ISystem):
    """Charges upkeep for active infrastructure; unpaid instances are paused."""

    @property
    def id(self) -> str:
        return "base.maintenance"

    @property
    def dependencies(self) -> List[str]:
        # Freshly completed instances pay from their first tick.
        return ["base.construction"]

    def update(self, state: GameState) -> None:
        with state.table_lock:
            paused = charge_maintenance(state)

        for inst in paused:
            state.events.append(EventInfrastructurePaused(
                territory=inst.territory_id,
                instance_id=inst.instance_id,
                type_key=inst.type_key,
                reason=inst.reason,
            ))

        state.tick.infrastructure_paused += len(paused)
        if paused:
            print(f"[System:Maintenance] {len(paused)} instance(s) paused for missed upkeep")
