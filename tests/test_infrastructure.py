import polars as pl
import pytest

from conftest import ADMIN_TOKEN, build_state, make_session, resource_totals, wallet
from modules.base.systems.construction_system import ConstructionSystem
from modules.base.systems.maintenance_system import MaintenanceSystem
from src.engine.mechanics.infrastructure import advance_construction, charge_maintenance
from src.server.state import TickData
from src.shared.events import EventConstructionCompleted, EventInfrastructurePaused

TYPES = pl.DataFrame([
    {"key": "warehouse", "name": "Warehouse", "scope": "national", "build_ticks": 2,
     "capacity_bonus": 5000.0, "stability_bonus": 0.0, "maintenance_energy": 2.0, "maintenance_currency": 4.0},
    {"key": "civic_center", "name": "Civic Center", "scope": "national", "build_ticks": 3,
     "capacity_bonus": 0.0, "stability_bonus": 60.0, "maintenance_energy": 3.0, "maintenance_currency": 15.0},
    {"key": "farm_complex", "name": "Farm Complex", "scope": "cell", "build_ticks": 3,
     "capacity_bonus": 0.0, "stability_bonus": 0.0, "maintenance_energy": 4.0, "maintenance_currency": 5.0},
])


def _queue(*items):
    return pl.DataFrame([
        {"id": item_id, "territory_id": territory_id, "cell_id": cell_id, "type_key": type_key,
         "remaining_ticks": remaining, "status": status}
        for item_id, territory_id, cell_id, type_key, remaining, status in items
    ], schema={"id": pl.String, "territory_id": pl.String, "cell_id": pl.String, "type_key": pl.String,
               "remaining_ticks": pl.Int64, "status": pl.String})


def _instances(*rows):
    return pl.DataFrame([
        {"id": inst_id, "territory_id": territory_id, "type_key": type_key, "status": status,
         "maintenance_energy": energy, "maintenance_currency": currency}
        for inst_id, territory_id, type_key, status, energy, currency in rows
    ])


# --- Construction ---

def test_countdown_and_single_completion():
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(
            ("cq-1", "t-a", None, "warehouse", 2, "in_progress"),
            ("cq-2", "t-b", "c-b1", "farm_complex", 5, "in_progress"),
        ),
    )

    assert advance_construction(state, 1) == []
    done = advance_construction(state, 2)

    assert [d.instance_id for d in done] == ["infra-cq-1"]
    queue = state.tables["construction_queue"].sort("id")
    assert queue["status"].to_list() == ["completed", "in_progress"]
    assert queue["remaining_ticks"].to_list() == [0, 3]

    instance = state.find_row("infrastructure", "id", "infra-cq-1")
    assert instance["status"] == "active"
    assert instance["scope"] == "national"
    assert instance["built_tick"] == 2
    assert resource_totals(state, "t-a")["capacity_total"] == 15000.0

    # Completed items are never processed again
    assert advance_construction(state, 3) == []
    assert resource_totals(state, "t-a")["capacity_total"] == 15000.0
    assert state.tables["infrastructure"].height == 1


def test_cell_build_is_cell_scoped():
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(("cq-1", "t-b", "c-b1", "farm_complex", 1, "in_progress")),
    )

    advance_construction(state, 7)

    instance = state.find_row("infrastructure", "id", "infra-cq-1")
    assert instance["scope"] == "cell"
    assert instance["cell_id"] == "c-b1"
    assert instance["maintenance_energy"] == 4.0


def test_stability_bonus_is_clamped():
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(("cq-1", "t-a", None, "civic_center", 1, "in_progress")),
    )

    done = advance_construction(state, 1)

    assert done[0].stability_bonus == 60.0
    assert state.find_row("territories", "id", "t-a")["stability"] == 100.0


def test_unknown_type_waits_at_zero():
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(("cq-1", "t-a", None, "space_elevator", 1, "in_progress")),
    )

    assert advance_construction(state, 1) == []
    row = state.find_row("construction_queue", "id", "cq-1")
    assert row["status"] == "in_progress"
    assert row["remaining_ticks"] == 0


# --- Maintenance ---

def test_upkeep_is_charged_from_warehouse_and_owner():
    state = build_state(infrastructure=_instances(("i-1", "t-a", "farm_complex", "active", 10.0, 20.0)))

    paused = charge_maintenance(state)

    assert paused == []
    assert resource_totals(state, "t-a")["energy"] == pytest.approx(290.0)
    assert wallet(state, "u-a") == pytest.approx(980.0)


def test_missing_energy_pauses_without_charging():
    state = build_state(infrastructure=_instances(
        ("i-1", "t-a", "farm_complex", "active", 250.0, 1.0),
        ("i-2", "t-a", "farm_complex", "active", 100.0, 1.0),
    ))

    paused = charge_maintenance(state)

    assert [(p.instance_id, p.reason) for p in paused] == [("i-2", "insufficient energy")]
    assert resource_totals(state, "t-a")["energy"] == pytest.approx(50.0)
    assert wallet(state, "u-a") == pytest.approx(999.0)
    assert state.find_row("infrastructure", "id", "i-2")["status"] == "paused"


def test_missing_currency_pauses():
    state = build_state(
        wallets={"u-a": 5.0, "u-b": 0.0},
        infrastructure=_instances(("i-1", "t-a", "civic_center", "active", 3.0, 15.0)),
    )

    paused = charge_maintenance(state)

    assert paused[0].reason == "insufficient currency"
    assert resource_totals(state, "t-a")["energy"] == pytest.approx(300.0)
    assert wallet(state, "u-a") == pytest.approx(5.0)


def test_paused_instances_are_not_resumed():
    state = build_state(infrastructure=_instances(("i-1", "t-a", "farm_complex", "paused", 1.0, 1.0)))

    assert charge_maintenance(state) == []
    assert state.find_row("infrastructure", "id", "i-1")["status"] == "paused"
    assert resource_totals(state, "t-a")["energy"] == pytest.approx(300.0)


# --- Systems: events ---

def test_construction_system_announces_completed_builds():
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(
            ("cq-1", "t-a", None, "warehouse", 1, "in_progress"),
            ("cq-2", "t-b", "c-b1", "farm_complex", 2, "in_progress"),
        ),
    )
    state.tick = TickData(number=5)

    ConstructionSystem().update(state)

    [event] = state.events
    assert isinstance(event, EventConstructionCompleted)
    assert (event.territory_id, event.type_key, event.instance_id) == ("t-a", "warehouse", "infra-cq-1")
    assert event.capacity_bonus == 5000.0
    assert state.tick.constructions_completed == 1


def test_maintenance_system_announces_paused_instances():
    state = build_state(infrastructure=_instances(
        ("i-1", "t-a", "farm_complex", "active", 250.0, 1.0),
        ("i-2", "t-a", "farm_complex", "active", 100.0, 1.0),
    ))
    state.tick = TickData(number=2)

    MaintenanceSystem().update(state)

    [event] = state.events
    assert isinstance(event, EventInfrastructurePaused)
    assert (event.territory_id, event.instance_id, event.reason) == ("t-a", "i-2", "insufficient energy")
    assert state.tick.infrastructure_paused == 1


def test_infrastructure_events_reach_the_event_log(tmp_path):
    state = build_state(
        infrastructure_types=TYPES,
        construction_queue=_queue(("cq-1", "t-a", None, "warehouse", 1, "in_progress")),
        infrastructure=_instances(("i-9", "t-b", "farm_complex", "active", 5000.0, 1.0)),
    )

    make_session(state, tmp_path).run_tick(ADMIN_TOKEN)

    logs = state.tables["event_logs"].filter(pl.col("tick_number") == 1)
    kinds = dict(zip(logs["kind"].to_list(), logs["territory_id"].to_list()))
    assert kinds["EventConstructionCompleted"] == "t-a"
    assert kinds["EventInfrastructurePaused"] == "t-b"
    paused = logs.filter(pl.col("kind") == "EventInfrastructurePaused").row(0, named=True)
    assert paused["event_type"] == "crisis"
    assert paused["title"] == "Infrastructure Paused"
