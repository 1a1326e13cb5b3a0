import polars as pl
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from src.server.state import GameState, set_row_values
from src.engine.mechanics.stability import clamp_stability

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
ACTIVE = "active"
PAUSED = "paused"

@dataclass
class CompletedConstruction:
    territory_id: str
    type_key: str
    instance_id: str
    capacity_bonus: float
    stability_bonus: float

@dataclass
class PausedInstance:
    territory_id: str
    instance_id: str
    type_key: str
    reason: str


def _type_index(state: GameState) -> Dict[str, Dict[str, Any]]:
    types = state.tables.get("infrastructure_types")
    if types is None or types.is_empty():
        return {}
    return {row["key"]: row for row in types.iter_rows(named=True)}


def advance_construction(state: GameState, tick_number: int) -> List[CompletedConstruction]:
    """
    Moves every in-progress build one tick closer to completion.

    Reaching zero flips the item to 'completed' exactly once (completed
    items are never touched again), materializes the infrastructure
    instance and applies the type's one-time capacity/stability bonus.
    An item whose type is unknown stays at zero ticks until the type exists.
    """
    queue = state.tables.get("construction_queue")
    if queue is None or queue.is_empty():
        return []

    types = _type_index(state)
    in_progress = pl.col("status") == IN_PROGRESS

    # 1. Vectorized countdown
    queue = queue.with_columns(
        pl.when(in_progress)
        .then((pl.col("remaining_ticks") - 1).clip(lower_bound=0))
        .otherwise(pl.col("remaining_ticks"))
        .cast(pl.Int64)
        .alias("remaining_ticks")
    )

    # 2. Completion (row by row: each one materializes a record)
    completed: List[CompletedConstruction] = []
    new_instances: List[Dict[str, Any]] = []
    territories = state.get_table("territories")
    balances = state.get_table("resource_balances")

    due = queue.filter(in_progress & (pl.col("remaining_ticks") == 0)).sort("id")
    for item in due.iter_rows(named=True):
        infra_type = types.get(item["type_key"])
        if infra_type is None:
            print(f"[Construction] Warning: Unknown infrastructure type '{item['type_key']}' for item {item['id']}")
            continue

        instance_id = f"infra-{item['id']}"
        new_instances.append({
            "id": instance_id,
            "territory_id": item["territory_id"],
            "cell_id": item.get("cell_id"),
            "type_key": item["type_key"],
            "scope": "cell" if item.get("cell_id") else "national",
            "status": ACTIVE,
            "maintenance_energy": float(infra_type.get("maintenance_energy") or 0.0),
            "maintenance_currency": float(infra_type.get("maintenance_currency") or 0.0),
            "built_tick": tick_number,
        })

        capacity_bonus = float(infra_type.get("capacity_bonus") or 0.0)
        stability_bonus = float(infra_type.get("stability_bonus") or 0.0)

        if capacity_bonus:
            warehouse = balances.filter(pl.col("territory_id") == item["territory_id"])
            if not warehouse.is_empty():
                balances = set_row_values(balances, "territory_id", item["territory_id"], {
                    "capacity_total": warehouse.item(0, "capacity_total") + capacity_bonus,
                })
        if stability_bonus:
            territory = territories.filter(pl.col("id") == item["territory_id"])
            if not territory.is_empty():
                territories = set_row_values(territories, "id", item["territory_id"], {
                    "stability": clamp_stability(territory.item(0, "stability") + stability_bonus),
                })

        queue = set_row_values(queue, "id", item["id"], {"status": COMPLETED})
        completed.append(CompletedConstruction(
            territory_id=item["territory_id"],
            type_key=item["type_key"],
            instance_id=instance_id,
            capacity_bonus=capacity_bonus,
            stability_bonus=stability_bonus,
        ))

    # 3. Commit
    state.update_table("construction_queue", queue)
    state.update_table("resource_balances", balances)
    state.update_table("territories", territories)
    state.append_rows("infrastructure", new_instances)
    return completed


def charge_maintenance(state: GameState) -> List[PausedInstance]:
    """
    Charges every active instance its per-tick upkeep.

    Energy comes from the owning territory's warehouse, currency from the
    territory owner's wallet. If either is short, nothing is charged and the
    instance is paused (not deleted). Paused instances are never resumed here.
    """
    instances = state.tables.get("infrastructure")
    if instances is None or instances.is_empty():
        return []

    territories = state.get_table("territories")
    balances = state.get_table("resource_balances")
    wallets = state.get_table("wallets")

    owners = {row["id"]: row.get("owner_id") for row in territories.iter_rows(named=True)}
    energy = {row["territory_id"]: row["energy"] for row in balances.iter_rows(named=True)}
    currency = {row["user_id"]: row["balance"] for row in wallets.iter_rows(named=True)}

    paused: List[PausedInstance] = []
    charged_territories = set()
    charged_users = set()

    active = instances.filter(pl.col("status") == ACTIVE).sort("id")
    for inst in active.iter_rows(named=True):
        territory_id = inst["territory_id"]
        owner_id: Optional[str] = owners.get(territory_id)
        energy_cost = inst.get("maintenance_energy") or 0.0
        currency_cost = inst.get("maintenance_currency") or 0.0

        reason = None
        if energy.get(territory_id, 0.0) < energy_cost:
            reason = "insufficient energy"
        elif currency_cost > 0 and currency.get(owner_id, 0.0) < currency_cost:
            reason = "insufficient currency"

        if reason:
            instances = set_row_values(instances, "id", inst["id"], {"status": PAUSED})
            paused.append(PausedInstance(territory_id, inst["id"], inst["type_key"], reason))
            continue

        if energy_cost:
            energy[territory_id] = energy.get(territory_id, 0.0) - energy_cost
            charged_territories.add(territory_id)
        if currency_cost:
            currency[owner_id] = currency[owner_id] - currency_cost
            charged_users.add(owner_id)

    for territory_id in charged_territories:
        balances = set_row_values(balances, "territory_id", territory_id, {"energy": energy[territory_id]})
    for user_id in charged_users:
        wallets = set_row_values(wallets, "user_id", user_id, {"balance": currency[user_id]})

    state.update_table("infrastructure", instances)
    state.update_table("resource_balances", balances)
    state.update_table("wallets", wallets)
    return paused
