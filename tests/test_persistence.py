import polars as pl
import pytest

from conftest import ADMIN_TOKEN, TOKENS, build_state
from src.core.paths import ProjectPaths
from src.engine.mechanics.market import create_order
from src.server.auth import TokenRegistry
from src.server.io.data_load_manager import DataLoader
from src.server.io.save_loader import SaveStateLoader
from src.server.io.save_writer import SaveWriter
from src.server.ledger import TickLedger
from src.server.session import GameSession
from src.server.state import TickData
from src.shared.actions import ActionCreateOrder
from src.shared.config import GameConfig, WorldConfig
from src.shared.errors import AuthError, InternalError, PermissionDenied, ValidationError
from src.shared.resources import EffectTag, TerritoryLevel


# --- Config ---

def _world_toml(root, mod_id, text):
    data_dir = root / "modules" / mod_id / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "world.toml").write_text(text)


def test_world_settings_merge_across_mods(tmp_path):
    _world_toml(tmp_path, "base", """
[market]
max_open_listings = 5
trade_event_threshold = 250.0

[level_factors]
colony = 1.0
power = 3.0
""")
    _world_toml(tmp_path, "hard_mode", """
[market]
max_open_listings = 2

[misc]
not_a_setting = 1
""")
    (tmp_path / "mods.json").write_text('{"active_mods": ["base", "hard_mode"]}')

    config = GameConfig(tmp_path).load_world_config()

    assert config.max_open_listings == 2
    assert config.trade_event_threshold == 250.0
    assert config.level_factor("power") == 3.0
    assert config.level_factor(TerritoryLevel.KINGDOM) == 1.0
    with pytest.raises(ValidationError):
        config.level_factor("empire")
    assert config.food_per_capita == 0.001


def test_missing_world_file_uses_defaults(tmp_path):
    config = GameConfig(tmp_path).load_world_config()
    assert config.max_open_listings == 20


# --- Initial data ---

@pytest.fixture(scope="module")
def base_state():
    return DataLoader(GameConfig(ProjectPaths.root())).load_initial_state()


def test_base_mod_tables_load(base_state):
    for name in ("territories", "cells", "resource_balances", "laws", "wallets", "users",
                 "infrastructure_types", "construction_queue"):
        assert not base_state.tables[name].is_empty(), name
    assert base_state.world.tick_number == 0
    assert len(base_state.listings) == 0


def test_resource_nodes_become_columns(base_state):
    cells = base_state.tables["cells"]
    assert "resource_nodes" not in cells.columns
    assert "_note" not in cells.columns
    c2 = cells.filter(pl.col("id") == "c-0002").row(0, named=True)
    assert c2["node_energy"] == pytest.approx(0.9)
    assert c2["node_tech"] == pytest.approx(0.3)
    assert c2["node_food"] == 0.0


def test_law_tags_are_lists(base_state):
    laws = base_state.tables["laws"]
    mining = laws.filter(pl.col("id") == "law-02").row(0, named=True)
    assert mining["positive_effects"] == ["minerals", "industry"]
    assert mining["negative_effects"] == ["social"]
    for row in laws.iter_rows(named=True):
        for tag in row["positive_effects"] + row["negative_effects"]:
            EffectTag(tag)


def test_unowned_cells_keep_null_owner(base_state):
    cells = base_state.tables["cells"]
    assert cells.schema["owner_territory_id"] == pl.String
    assert cells.filter(pl.col("owner_territory_id").is_null()).height == 1


def test_dev_tokens_resolve(base_state):
    registry = TokenRegistry(base_state.tables["users"])
    assert registry.require_admin("admin-dev-token").user_id == "u-admin"
    assert registry.authenticate("alice-dev-token").user_id == "u-alice"


# --- Saves ---

def test_save_round_trip(tmp_path):
    config = GameConfig(tmp_path)
    state = build_state()
    listing, _ = create_order(state, ActionCreateOrder("u-a", "sell", "food", 25, 3.0, "t-a"))
    writer = SaveWriter(config)

    assert writer.save_game(state, "tick_000000")

    loaded = SaveStateLoader(config).load("tick_000000")
    assert set(loaded.tables) == set(state.tables)
    for name, df in state.tables.items():
        assert loaded.tables[name].equals(df), name
    assert loaded.world == state.world
    assert loaded.listings.get(listing.id).to_row() == listing.to_row()
    assert loaded.events == []


def test_latest_save_is_highest_tick(tmp_path):
    config = GameConfig(tmp_path)
    writer = SaveWriter(config)
    state = build_state()

    writer.save_game(state, "first")
    state.world = state.world.advance(7, "2026-01-01T00:00:00+00:00")
    writer.save_game(state, "seventh")

    assert writer.latest_save() == "seventh"
    assert [s["tick"] for s in writer.get_available_saves()] == [7, 0]
    assert writer.delete_save("seventh")
    assert writer.latest_save() == "first"


def test_invalid_save_name_is_refused(tmp_path):
    assert not SaveWriter(GameConfig(tmp_path)).save_game(build_state(), "../")


def test_loading_a_missing_save_fails(tmp_path):
    with pytest.raises(FileNotFoundError):
        SaveStateLoader(GameConfig(tmp_path)).load("nope")


# --- Ledger & auth ---

def test_ledger_refuses_gaps(state):
    ledger = TickLedger()
    ledger.finalize(state, TickData(number=1), events_generated=0)

    with pytest.raises(InternalError):
        ledger.finalize(state, TickData(number=3), events_generated=0)
    with pytest.raises(InternalError):
        ledger.finalize(state, TickData(number=1), events_generated=0)

    assert ledger.recent(state)[0]["status"] == "completed"


def test_token_registry(registry):
    assert registry.authenticate(TOKENS["u-b"]).user_id == "u-b"
    assert registry.require_admin(ADMIN_TOKEN).is_admin
    with pytest.raises(AuthError):
        registry.authenticate("")
    with pytest.raises(PermissionDenied):
        registry.require_admin(TOKENS["u-a"])


# --- Startup ---

def _project(tmp_path):
    (tmp_path / "modules").symlink_to(ProjectPaths.modules(), target_is_directory=True)
    return GameConfig(tmp_path)


def test_session_boots_from_mod_data_and_resumes_autosave(tmp_path):
    config = _project(tmp_path)

    session = GameSession.create_local(config)
    assert session.state.world.tick_number == 0
    result = session.run_tick("admin-dev-token")
    assert result["summary"]["constructions_completed"] == 1
    assert session.writer.latest_save() == "tick_000001"

    resumed = GameSession.create_local(config)
    assert resumed.state.world.tick_number == 1
    assert resumed.run_tick("admin-dev-token")["tick_number"] == 2


def test_fresh_start_ignores_saves(tmp_path):
    config = _project(tmp_path)
    first = GameSession.create_local(config)
    first.run_tick("admin-dev-token")

    fresh = GameSession.create_local(config, resume=False)

    assert fresh.state.world.tick_number == 0


def test_autosaves_beyond_the_limit_are_pruned(tmp_path):
    writer = SaveWriter(GameConfig(tmp_path))
    state = build_state(config=WorldConfig(autosave_keep=2))
    writer.save_game(state, "before-the-war")

    for tick_number in range(1, 5):
        state.world = state.world.advance(tick_number, "2026-01-01T00:00:00+00:00")
        assert writer.save_tick(state)

    names = [s["name"] for s in writer.get_available_saves()]
    assert names == ["tick_000004", "tick_000003", "before-the-war"]


def test_save_metadata_records_mods(tmp_path):
    writer = SaveWriter(GameConfig(tmp_path))
    writer.save_game(build_state(), "snapshot")

    assert writer.get_available_saves()[0]["mods"] == ["base"]


def test_root_override_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("PLANET_ROOT", str(tmp_path))
    ProjectPaths.reset()
    try:
        assert ProjectPaths.root() == tmp_path.resolve()
        assert ProjectPaths.modules() == tmp_path.resolve() / "modules"
    finally:
        ProjectPaths.reset()


def test_unknown_law_tags_stop_the_boot(tmp_path):
    data_dir = tmp_path / "modules" / "base" / "data"
    data_dir.mkdir(parents=True)
    (data_dir / "laws.tsv").write_text(
        "id\tterritory_id\tlegal_level\tstatus\tpositive_effects\tnegative_effects\n"
        "law-ok\tt-1\tnational\tenacted\tagriculture|energy\t\n"
        "law-typo\tt-2\tnational\tenacted\tagricultura\tsocial\n"
    )

    with pytest.raises(ValidationError, match="law-typo:agricultura"):
        DataLoader(GameConfig(tmp_path)).load_initial_state()
