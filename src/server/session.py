import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from src.shared.config import GameConfig
from src.shared.actions import GameAction, ActionRunTick, ActionCreateOrder, ActionCancelOrder
from src.shared.errors import ConcurrencyConflictError, InternalError, SimulationError, ValidationError
from src.shared.events import GameEvent

from src.engine.mod_manager import ModManager
from src.engine.simulator import Engine
from src.engine.mechanics.market import MarketClearingEngine, create_order, cancel_order
from src.server.auth import Principal, TokenRegistry
from src.server.io.data_load_manager import DataLoader
from src.server.io.save_loader import SaveStateLoader
from src.server.io.save_writer import SaveWriter
from src.server.ledger import EventLogger, TickLedger
from src.server.state import GameState

SCHEDULER_ID = "scheduler"

class GameSession:
    """
    The 'Host' of the world. It owns the GameState and is the only place
    that runs ticks or executes player actions against it.

    Architecture Note:
        This class uses the Factory Method pattern (`create_local`).
        The `__init__` method is lightweight and strictly for Dependency Injection.

    Concurrency:
        - Ticks are not re-entrant. `tick_lock` is taken without waiting;
          a second trigger while a tick runs is rejected, never interleaved.
        - Orders may arrive while a tick runs. They only contend on the
          listing row locks and the short `state.table_lock` sections.
    """

    def __init__(self,
                 config: GameConfig,
                 engine: Engine,
                 initial_state: GameState,
                 writer: Optional[SaveWriter] = None,
                 registry: Optional[TokenRegistry] = None):
        self.config = config
        self.engine = engine
        self.writer = writer
        self.registry = registry or TokenRegistry(initial_state.tables.get("users"))

        self.ledger = TickLedger()
        self.event_logger = EventLogger()
        self.clearing = MarketClearingEngine()

        self.state = initial_state
        self.tick_lock = threading.Lock()

        print(f"[GameSession] Session initialized at tick {self.state.world.tick_number}.")

    @classmethod
    def create_local(cls, config: GameConfig, resume: bool = True) -> 'GameSession':
        """
        Startup sequence: resolve mods, restore the newest save (or compile
        the world from mod data when there is none or `resume` is off), then
        register the systems the mods ship.
        """
        try:
            # --- Step 1: Mods ---
            mod_manager = ModManager(config)
            active_mods = mod_manager.resolve_load_order()
            config.active_mods = [m.id for m in active_mods]

            # --- Step 2: World ---
            writer = SaveWriter(config)
            latest = writer.latest_save() if resume else None
            if latest:
                state = SaveStateLoader(config).load(latest)
            else:
                state = DataLoader(config).load_initial_state()

            # --- Step 3: Tick pipeline ---
            engine = Engine()
            engine.register_systems(mod_manager.load_systems())

            return cls(config, engine, state, writer=writer)

        except Exception as e:
            print(f"[GameSession] Critical Startup Error: {e}")
            raise

    # --- Tick ---

    def run_tick(self, token: Optional[str]) -> Dict[str, Any]:
        """
        Administrative trigger. Authentication happens before anything else,
        so a rejected caller never touches the state.
        """
        principal = self.registry.require_admin(token)
        return self.submit(ActionRunTick(player_id=principal.user_id))

    def run_scheduled_tick(self) -> Optional[Dict[str, Any]]:
        """Auto trigger: a round that finds a tick already running is skipped."""
        try:
            return self.submit(ActionRunTick(player_id=SCHEDULER_ID))
        except ConcurrencyConflictError:
            print("[GameSession] Scheduled tick skipped: previous tick still running")
            return None

    def _execute_tick(self, action: ActionRunTick) -> Dict[str, Any]:
        if not self.tick_lock.acquire(blocking=False):
            raise ConcurrencyConflictError("A tick is already running")

        try:
            world = self.state.world
            tick_number = world.next_tick_number
            print(f"[GameSession] Tick {tick_number} triggered by {action.player_id}")

            try:
                tick = self.engine.step(self.state, tick_number)

                # Optimistic check on the world aggregate before claiming the number.
                if self.state.world.version != world.version:
                    raise ConcurrencyConflictError("World state changed while the tick was running")

                events_generated = self.event_logger.flush(self.state, tick_number)
                summary = self.ledger.finalize(self.state, tick, events_generated)
            except SimulationError:
                raise
            except Exception as e:
                raise InternalError(f"Tick {tick_number} failed: {e}") from e

            self.state.world = world.advance(tick_number, datetime.now(timezone.utc).isoformat())

            if self.writer and self.state.config.autosave:
                self.writer.save_tick(self.state)

            print(f"[GameSession] Tick {tick_number} completed "
                  f"({summary.territories_processed} territories, {summary.trades_executed} trades)")
            return {"success": True, "tick_number": tick_number, "summary": summary.to_response()}
        finally:
            self.tick_lock.release()

    # --- Actions ---

    def submit(self, action: GameAction) -> Dict[str, Any]:
        """
        Executes a player/admin action against the state and returns its result.
        The caller is responsible for having authenticated `action.player_id`.
        """
        if isinstance(action, ActionRunTick):
            return self._execute_tick(action)
        if isinstance(action, ActionCreateOrder):
            return self._execute_create_order(action)
        if isinstance(action, ActionCancelOrder):
            return self._execute_cancel_order(action)
        raise ValidationError(f"Unsupported action '{type(action).__name__}'")

    def authenticate(self, token: Optional[str]) -> Principal:
        return self.registry.authenticate(token)

    def _execute_create_order(self, action: ActionCreateOrder) -> Dict[str, Any]:
        events: List[GameEvent] = []
        tick_number = self.state.world.tick_number
        listing, trades = create_order(self.state, action, self.clearing, tick_number, events)
        self.event_logger.write(self.state, events, tick_number)
        return {
            "success": True,
            "listing": listing.to_row(),
            "trades_executed": len(trades),
        }

    def _execute_cancel_order(self, action: ActionCancelOrder) -> Dict[str, Any]:
        listing = cancel_order(self.state, action)
        return {"success": True, "listing": listing.to_row()}

    # --- Queries ---

    def recent_ticks(self, limit: int = 10) -> List[Dict[str, Any]]:
        return self.ledger.recent(self.state, limit)
