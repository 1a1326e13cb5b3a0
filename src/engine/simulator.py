import time
from datetime import datetime, timezone
from graphlib import TopologicalSorter, CycleError
from typing import Dict, List

from src.engine.interfaces import ISystem
from src.server.state import GameState, TickData
from src.shared.events import EventSystemFailed

class Engine:
    """
    Runs the tick pipeline: every registered system once, dependencies first.

    Architecture Note:
        The pipeline order is never hard-coded. Each system names the systems
        it must follow and the Engine derives the order with a topological
        sort, so a mod can slot a new stage (e.g. 'winter.famine' after
        'base.territory') without touching the base mod.
    """

    def __init__(self):
        self.systems_map: Dict[str, ISystem] = {}
        self.execution_order: List[ISystem] = []
        self._needs_sort = False

    def register_systems(self, systems: List[ISystem]):
        for system in systems:
            if system.id in self.systems_map:
                print(f"[Engine] Warning: '{system.id}' registered twice, keeping the last one")
            self.systems_map[system.id] = system
        self._needs_sort = True

    def _sort_pipeline(self):
        graph = TopologicalSorter({sys_id: s.dependencies for sys_id, s in self.systems_map.items()})
        try:
            ordered = list(graph.static_order())
        except CycleError as e:
            print(f"[Engine] CRITICAL: tick pipeline has a dependency cycle: {e.args[1]}")
            raise

        # Dependencies on systems nobody registered are ignored.
        self.execution_order = [self.systems_map[i] for i in ordered if i in self.systems_map]
        self._needs_sort = False
        print(f"[Engine] Tick pipeline: {' -> '.join(s.id for s in self.execution_order)}")

    def step(self, state: GameState, tick_number: int) -> TickData:
        """
        Runs one tick and returns its scratch data.

        Stages always run to completion. A system that raises is logged as a
        failure (and an EventSystemFailed) and the next system still runs.
        """
        if self._needs_sort:
            self._sort_pipeline()

        state.events.clear()
        state.tick = TickData(number=tick_number, started_at=datetime.now(timezone.utc).isoformat())

        for system in self.execution_order:
            started = time.perf_counter()
            try:
                system.update(state)
            except Exception as e:
                print(f"[Engine] Tick {tick_number}: system '{system.id}' failed: {e}")
                state.tick.failures.append({"scope": system.id, "error": str(e)})
                state.events.append(EventSystemFailed(system_id=system.id, error=str(e)))
            finally:
                state.tick.timings_ms[system.id] = round((time.perf_counter() - started) * 1000, 3)

        return state.tick
