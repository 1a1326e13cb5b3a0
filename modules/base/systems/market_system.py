from typing import List

from src.engine.interfaces import ISystem
from src.engine.mechanics.market import MarketClearingEngine
from src.server.state import GameState

class MarketSystem(ISystem):
    """Clears the whole order book once per tick, after the economy has settled."""

    def __init__(self):
        self.clearing = MarketClearingEngine()

    @property
    def id(self) -> str:
        return "base.market"

    @property
    def dependencies(self) -> List[str]:
        return ["base.migration", "base.territory"]

    def update(self, state: GameState) -> None:
        trades = self.clearing.clear(state, tick_number=state.tick.number)
        state.tick.trades_executed += len(trades)
        if trades:
            print(f"[System:Market] Executed {len(trades)} trade(s)")
