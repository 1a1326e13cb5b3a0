import uuid
import orjson
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

from src.server.state import GameState, TickData
from src.shared.errors import InternalError
from src.shared.events import GameEvent

class EventLogger:
    """
    Flushes the event bus into the append-only 'event_logs' table.
    Each event becomes one narrative record for its territory.
    """

    def flush(self, state: GameState, tick_number: int) -> int:
        """Writes and clears the tick's event bus."""
        written = self.write(state, state.events, tick_number)
        state.events.clear()
        return written

    def write(self, state: GameState, events: List[GameEvent], tick_number: int) -> int:
        if not events:
            return 0

        now = datetime.now(timezone.utc).isoformat()
        rows = [
            {
                "id": str(uuid.uuid4()),
                "tick_number": tick_number,
                "territory_id": event.territory_id,
                "event_type": event.category,
                "kind": type(event).__name__,
                "title": event.title,
                "description": event.describe(),
                "effects": orjson.dumps(event.effects()).decode(),
                "created_at": now,
            }
            for event in events
        ]
        with state.table_lock:
            state.append_rows("event_logs", rows)
        return len(rows)


@dataclass
class TickSummary:
    tick_number: int
    per_state: List[Dict[str, Any]]
    trades_executed: int
    territories_processed: int
    cities_processed: int
    events_generated: int
    constructions_completed: int
    infrastructure_paused: int
    failures: List[Dict[str, str]]
    tick_interval_hours: int

    def to_response(self) -> Dict[str, Any]:
        return {
            "per_state": self.per_state,
            "trades_executed": self.trades_executed,
            "territories_processed": self.territories_processed,
            "cities_processed": self.cities_processed,
            "events_generated": self.events_generated,
            "constructions_completed": self.constructions_completed,
            "infrastructure_paused": self.infrastructure_paused,
            "failures": self.failures,
            "tick_interval_hours": self.tick_interval_hours,
        }


class TickLedger:
    """
    Append-only 'tick_logs' table, one row per successful tick,
    keyed by a strictly increasing tick_number.
    """

    def last_tick_number(self, state: GameState) -> int:
        logs = state.tables.get("tick_logs")
        if logs is None or logs.is_empty():
            return 0
        return int(logs.get_column("tick_number").max())

    def finalize(self, state: GameState, tick: TickData, events_generated: int) -> TickSummary:
        last = self.last_tick_number(state)
        if tick.number != last + 1:
            raise InternalError(f"Tick {tick.number} does not follow logged tick {last}")

        summary = TickSummary(
            tick_number=tick.number,
            per_state=[tick.per_state[k] for k in sorted(tick.per_state)],
            trades_executed=tick.trades_executed,
            territories_processed=tick.territories_processed,
            cities_processed=tick.cities_processed,
            events_generated=events_generated,
            constructions_completed=tick.constructions_completed,
            infrastructure_paused=tick.infrastructure_paused,
            failures=list(tick.failures),
            tick_interval_hours=state.config.tick_interval_hours,
        )

        state.append_rows("tick_logs", [{
            "id": str(uuid.uuid4()),
            "tick_number": tick.number,
            "started_at": tick.started_at,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "status": "partial" if tick.failures else "completed",
            "territories_processed": summary.territories_processed,
            "cities_processed": summary.cities_processed,
            "events_generated": summary.events_generated,
            "trades_executed": summary.trades_executed,
            "summary": orjson.dumps(summary.to_response()).decode(),
            "timings_ms": orjson.dumps(tick.timings_ms).decode(),
        }])
        return summary

    def recent(self, state: GameState, limit: int = 10) -> List[Dict[str, Any]]:
        logs = state.tables.get("tick_logs")
        if logs is None or logs.is_empty():
            return []
        rows = logs.sort("tick_number", descending=True).head(limit).to_dicts()
        for row in rows:
            row["summary"] = orjson.loads(row["summary"]) if row.get("summary") else {}
            row["timings_ms"] = orjson.loads(row["timings_ms"]) if row.get("timings_ms") else {}
        return rows
