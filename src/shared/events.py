from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

@dataclass
class GameEvent:
    """
    Base class for all internal simulation events.

    Architecture Note:
        Events are distinct from Actions.
        - Actions: External commands FROM the user/network TO the engine.
        - Events: Internal signals FROM one system TO another (and to players).

        Systems append events to `state.events` while they run. At the end of
        the tick the EventLogger flushes them into the 'event_logs' table,
        so every event doubles as a narrative record for the territory.
    """
    category = "global"
    title = "Event"

    @property
    def territory_id(self) -> Optional[str]:
        return getattr(self, "territory", None)

    def describe(self) -> str:
        return self.title

    def effects(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("territory", None)
        return data

# --- Failures ---

@dataclass
class EventSystemFailed(GameEvent):
    """A whole system raised; the Engine moved on to the next one."""
    system_id: str
    error: str
    category = "crisis"
    title = "System Failure"

    def describe(self) -> str:
        return f"System '{self.system_id}' failed: {self.error}"

@dataclass
class EventTerritoryFailed(GameEvent):
    """One territory's pipeline raised; the remaining territories still ran."""
    territory: str
    stage: str
    error: str
    category = "crisis"
    title = "Territory Processing Failed"

    def describe(self) -> str:
        return f"Processing stopped at '{self.stage}': {self.error}"

@dataclass
class EventLawRejected(GameEvent):
    """An enacted law carried data the engine cannot read and was ignored this tick."""
    territory: str
    law_id: str
    error: str
    category = "crisis"
    title = "Law Ignored"

    def describe(self) -> str:
        return f"Law '{self.law_id}' had no effect: {self.error}"

# --- Warehouse & resources ---

@dataclass
class EventWarehouseOverflow(GameEvent):
    territory: str
    overflow: float
    effective_loss: float
    capacity: float
    title = "Warehouse Full"

    def describe(self) -> str:
        return f"Surplus discarded: {round(self.effective_loss)}"

@dataclass
class EventResourceCrisis(GameEvent):
    territory: str
    resource: str
    shortfall: float
    category = "crisis"

    _TITLES = {
        "food": ("Food Crisis", "Not enough food for the population"),
        "energy": ("Energy Crisis", "Blackouts, production expected to fall"),
        "minerals": ("Mineral Bottleneck", "Expansion and infrastructure blocked"),
        "tech": ("Technological Stagnation", "Research stalled for lack of technology"),
    }

    @property
    def title(self) -> str:  # type: ignore[override]
        return self._TITLES.get(self.resource, ("Resource Crisis", ""))[0]

    def describe(self) -> str:
        return self._TITLES.get(self.resource, ("", f"Shortage of {self.resource}"))[1]

# --- Population ---

@dataclass
class EventMigration(GameEvent):
    """Large inter-territory population flow."""
    territory: str
    net_flow: int
    attractiveness: float
    average: float
    category = "regional"

    @property
    def title(self) -> str:  # type: ignore[override]
        return "Mass Immigration" if self.net_flow > 0 else "Mass Emigration"

    def describe(self) -> str:
        direction = "arrived" if self.net_flow > 0 else "left"
        return f"{abs(self.net_flow)} people {direction}"

# --- Infrastructure ---

@dataclass
class EventConstructionCompleted(GameEvent):
    territory: str
    type_key: str
    instance_id: str
    capacity_bonus: float = 0.0
    stability_bonus: float = 0.0
    title = "Construction Completed"

    def describe(self) -> str:
        return f"'{self.type_key}' is now operational"

@dataclass
class EventInfrastructurePaused(GameEvent):
    territory: str
    instance_id: str
    type_key: str
    reason: str
    category = "crisis"
    title = "Infrastructure Paused"

    def describe(self) -> str:
        return f"'{self.type_key}' paused: {self.reason}"

# --- Market ---

@dataclass
class EventLargeTrade(GameEvent):
    resource_type: str
    quantity: float
    price_per_unit: float
    buyer_territory: Optional[str] = None
    seller_territory: Optional[str] = None
    title = "Large Trade"

    @property
    def territory_id(self) -> Optional[str]:
        return self.seller_territory or self.buyer_territory

    def describe(self) -> str:
        return f"{self.quantity:g} {self.resource_type} traded at {self.price_per_unit:g}"
