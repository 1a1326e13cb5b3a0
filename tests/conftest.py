from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import polars as pl
import pytest

from modules.base.systems.construction_system import ConstructionSystem
from modules.base.systems.law_system import LawSystem
from modules.base.systems.maintenance_system import MaintenanceSystem
from modules.base.systems.market_system import MarketSystem
from modules.base.systems.migration_system import MigrationSystem
from modules.base.systems.territory_system import TerritorySystem
from src.engine.mechanics.listings import ListingBook
from src.engine.simulator import Engine
from src.server.auth import TokenRegistry, hash_token
from src.server.session import GameSession
from src.server.state import GameState, WorldState
from src.shared.config import GameConfig, WorldConfig

ADMIN_TOKEN = "admin-secret"
TOKENS = {"u-a": "alpha-secret", "u-b": "beta-secret"}

CELL_FLOATS = (
    "fertility", "habitability", "mineral_richness", "energy_potential", "urbanization_pull",
    "node_food", "node_energy", "node_minerals", "node_tech",
)


def frame(rows: List[Dict[str, Any]], floats: Iterable[str] = (), strings: Iterable[str] = ()) -> pl.DataFrame:
    """DataFrame with explicit float/string columns, so literal ints in tests stay harmless."""
    df = pl.DataFrame(rows)
    floats = [c for c in floats if c in df.columns]
    strings = [c for c in strings if c in df.columns]
    if floats:
        df = df.with_columns(pl.col(floats).cast(pl.Float64))
    if strings:
        df = df.with_columns(pl.col(strings).cast(pl.String))
    return df


def cell(cell_id: str, territory_id: Optional[str], rural: int, urban: int = 0, **attrs) -> Dict[str, Any]:
    row = {
        "id": cell_id,
        "region_id": "r-1",
        "owner_territory_id": territory_id,
        "rural_population": rural,
        "urban_population": urban,
    }
    for name in CELL_FLOATS:
        row[name] = float(attrs.get(name, 0.0))
    if "habitability" not in attrs:
        row["habitability"] = 1.0
    return row


def cells_frame(rows: List[Dict[str, Any]]) -> pl.DataFrame:
    return frame(rows, floats=CELL_FLOATS, strings=("id", "region_id", "owner_territory_id"))


def territory(territory_id: str, owner_id: str, stability: float = 50.0, level: str = "colony") -> Dict[str, Any]:
    return {
        "id": territory_id,
        "name": territory_id.upper(),
        "owner_id": owner_id,
        "level": level,
        "stability": float(stability),
        "total_rural_population": 0,
        "total_urban_population": 0,
        "cells_owned_count": 0,
        "cities_owned_count": 0,
    }


def warehouse(territory_id: str, food=0.0, energy=0.0, minerals=0.0, tech=0.0,
              capacity=10000.0) -> Dict[str, Any]:
    return {
        "territory_id": territory_id,
        "food": float(food),
        "energy": float(energy),
        "minerals": float(minerals),
        "tech": float(tech),
        "capacity_total": float(capacity),
        "tick_number": 0,
    }


def build_state(
    territories: Optional[List[Dict[str, Any]]] = None,
    cells: Optional[List[Dict[str, Any]]] = None,
    balances: Optional[List[Dict[str, Any]]] = None,
    wallets: Optional[Dict[str, float]] = None,
    tokens: Optional[Dict[str, Dict[str, int]]] = None,
    config: Optional[WorldConfig] = None,
    **extra_tables: pl.DataFrame,
) -> GameState:
    """
    Two players (u-a owns t-a, u-b owns t-b) with modest populations and
    room in their warehouses, unless told otherwise.
    """
    territories = territories or [territory("t-a", "u-a"), territory("t-b", "u-b")]
    cells = cells or [
        cell("c-a1", "t-a", 20000, 5000, fertility=1.0, energy_potential=1.0, urbanization_pull=0.5),
        cell("c-b1", "t-b", 15000, 8000, fertility=0.8, mineral_richness=1.0, energy_potential=0.5),
    ]
    balances = balances or [
        warehouse("t-a", food=500, energy=300, minerals=100, tech=50),
        warehouse("t-b", food=200, energy=200, minerals=400, tech=20),
    ]
    wallets = wallets if wallets is not None else {"u-a": 1000.0, "u-b": 1000.0, "u-admin": 0.0}
    tokens = tokens if tokens is not None else {
        "u-a": {"city": 2, "land": 10, "state": 1},
        "u-b": {"city": 1, "land": 4, "state": 0},
    }

    tables = {
        "territories": frame(territories, floats=("stability",)),
        "cells": cells_frame(cells),
        "resource_balances": frame(balances, floats=("food", "energy", "minerals", "tech", "capacity_total")),
        "wallets": frame(
            [{"user_id": u, "balance": float(b), "total_earned": 0.0} for u, b in wallets.items()],
            floats=("balance", "total_earned"),
        ),
        "token_balances": pl.DataFrame([
            {"user_id": u, "city_tokens": t["city"], "land_tokens": t["land"], "state_tokens": t["state"]}
            for u, t in tokens.items()
        ]),
        "users": pl.DataFrame([
            {"user_id": "u-admin", "api_token_sha256": hash_token(ADMIN_TOKEN), "roles": "admin"},
            *[
                {"user_id": u, "api_token_sha256": hash_token(t), "roles": "player"}
                for u, t in TOKENS.items()
            ],
        ]),
    }
    tables.update(extra_tables)

    return GameState(
        tables=tables,
        world=WorldState(config=config or WorldConfig()),
        listings=ListingBook(),
    )


def make_session(state: GameState, tmp_path, writer=None) -> GameSession:
    """Session over `state` with the base tick pipeline and no autosave."""
    engine = Engine()
    engine.register_systems([
        ConstructionSystem(), MaintenanceSystem(), LawSystem(),
        TerritorySystem(), MigrationSystem(), MarketSystem(),
    ])
    return GameSession(GameConfig(tmp_path), engine, state, writer=writer)


def resource_totals(state: GameState, territory_id: str) -> Dict[str, float]:
    return state.find_row("resource_balances", "territory_id", territory_id)


def wallet(state: GameState, user_id: str) -> float:
    return state.find_row("wallets", "user_id", user_id)["balance"]


@pytest.fixture
def config() -> WorldConfig:
    return WorldConfig()


@pytest.fixture
def state() -> GameState:
    return build_state()


@pytest.fixture
def registry(state: GameState) -> TokenRegistry:
    return TokenRegistry(state.tables["users"])
