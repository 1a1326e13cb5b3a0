import threading
import polars as pl
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional, TYPE_CHECKING

from src.shared.config import WorldConfig

if TYPE_CHECKING:
    from src.shared.events import GameEvent
    from src.engine.mechanics.listings import ListingBook

# Marks dataclass fields that live only for the duration of a process/tick.
# SaveWriter and SaveStateLoader skip them.
TRANSIENT = {"transient": True}

@dataclass(frozen=True)
class WorldState:
    """
    Immutable snapshot of the world-wide row (config + tick counter).

    Architecture Note:
        The session never mutates this object. A completed tick produces a
        new WorldState via `advance()`, and the bumped `version` lets the
        session detect that someone else committed in between.
    """
    world_id: str = "planet"
    tick_number: int = 0
    version: int = 0
    last_tick_at: Optional[str] = None
    config: WorldConfig = field(default_factory=WorldConfig)

    @property
    def next_tick_number(self) -> int:
        return self.tick_number + 1

    def advance(self, tick_number: int, finished_at: str) -> "WorldState":
        return WorldState(
            world_id=self.world_id,
            tick_number=tick_number,
            version=self.version + 1,
            last_tick_at=finished_at,
            config=self.config,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorldState":
        data = dict(data)
        config = data.pop("config", None) or {}
        return cls(config=WorldConfig.from_mapping(config), **data)

@dataclass
class TickData:
    """
    Scratch data for the tick currently being executed.

    Systems communicate through this component (law effects feed territory
    processing, territory metrics feed global migration) and the ledger
    reads the counters when the tick is finalized.
    """
    number: int = 0
    started_at: str = ""

    # base.laws -> base.territory
    law_effects: Dict[str, Any] = field(default_factory=dict)

    # base.territory -> base.migration (only successfully processed territories)
    territory_metrics: Dict[str, Dict[str, float]] = field(default_factory=dict)

    # Per-state snapshot for the tick log, keyed by territory id.
    per_state: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    failures: List[Dict[str, str]] = field(default_factory=list)

    # Wall time per system id, filled by the Engine.
    timings_ms: Dict[str, float] = field(default_factory=dict)

    territories_processed: int = 0
    cities_processed: int = 0
    trades_executed: int = 0
    constructions_completed: int = 0
    infrastructure_paused: int = 0

@dataclass
class GameState:
    """
    The central data store for the entire simulation.
    Strictly adheres to Data-Oriented Design.
    """

    # Stores the primary game data (DataFrames).
    # Keys are table names (e.g., 'territories', 'cells', 'resource_balances').
    tables: Dict[str, pl.DataFrame] = field(default_factory=dict)

    # World-wide row: config and last completed tick.
    world: WorldState = field(default_factory=WorldState)

    # Market listings keep per-row locks, so they are not a plain table.
    listings: Optional['ListingBook'] = None

    # Dedicated component for the tick being executed.
    tick: TickData = field(default_factory=TickData, metadata=TRANSIENT)

    # The Event Bus.
    # Systems append events here during their update.
    # The Engine clears this list at the start of every tick.
    events: List['GameEvent'] = field(default_factory=list, metadata=TRANSIENT)

    # Guards read-modify-write cycles on tables shared between the tick
    # and external order handling. Held only for short critical sections.
    table_lock: Any = field(default_factory=threading.RLock, repr=False, compare=False, metadata=TRANSIENT)

    @property
    def config(self) -> WorldConfig:
        return self.world.config

    def get_table(self, name: str) -> pl.DataFrame:
        """
        Retrieves a reference to a simulation table.
        """
        if name not in self.tables:
            raise KeyError(f"Table '{name}' not found in GameState.")
        return self.tables[name]

    def update_table(self, name: str, df: pl.DataFrame):
        """
        Replaces a table in the state (Copy-on-Write).
        """
        self.tables[name] = df

    def append_rows(self, name: str, rows: List[Dict[str, Any]]):
        """
        Appends rows to an append-only table (ledgers, logs).
        Missing columns are filled with nulls.
        """
        if not rows:
            return
        new_rows = pl.DataFrame(rows)
        current = self.tables.get(name)
        if current is None or current.is_empty():
            self.tables[name] = new_rows
        else:
            self.tables[name] = pl.concat([current, new_rows], how="diagonal_relaxed")

    def find_row(self, name: str, key_col: str, key: Any) -> Optional[Dict[str, Any]]:
        df = self.tables.get(name)
        if df is None or df.is_empty():
            return None
        rows = df.filter(pl.col(key_col) == key)
        if rows.is_empty():
            return None
        return rows.row(0, named=True)


def set_row_values(df: pl.DataFrame, key_col: str, key: Any, values: Dict[str, Any]) -> pl.DataFrame:
    """
    Returns a copy of `df` where the row(s) matching `key` carry `values`.

    Conditional-expression update: 'if key matches, use the new value;
    otherwise keep the old one'.
    """
    return df.with_columns([
        pl.when(pl.col(key_col) == key)
        .then(pl.lit(value))
        .otherwise(pl.col(col))
        .cast(df.schema[col])
        .alias(col)
        for col, value in values.items()
    ])
