import dataclasses
import json
import rtoml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Union

from src.shared.resources import TerritoryLevel

@dataclass(frozen=True)
class WorldConfig:
    """
    World-wide tuning constants for the tick engine and the market.

    These are configuration inputs, not part of the design contract:
    mods override them through 'data/world.toml'.
    """
    # --- Production ---
    activity_fraction: float = 0.6
    food_fertility_yield: float = 0.0005
    food_node_yield: float = 0.0004
    mineral_rural_yield: float = 0.0002
    mineral_urban_yield: float = 0.0001
    energy_urban_yield: float = 0.00015
    energy_city_bonus: float = 2.0
    tech_urban_yield: float = 0.00012
    tech_habitability_min: float = 0.3
    tech_habitability_max: float = 1.0
    stability_factor_base: float = 0.6
    stability_factor_span: float = 0.8
    law_tag_bonus: float = 0.05
    infra_bonus_cap: float = 0.5
    waste_reduction_cap: float = 0.9
    default_capacity: float = 10000.0

    # --- Consumption ---
    food_per_capita: float = 0.001
    energy_per_capita: float = 0.0006
    energy_per_city: float = 30.0
    tech_research_cost: float = 12.0
    level_factors: Dict[str, float] = field(default_factory=lambda: {
        "colony": 1.0,
        "autonomous": 1.2,
        "recognized": 1.5,
        "kingdom": 2.0,
        "power": 2.5,
    })

    # --- Population ---
    growth_base_rate: float = 0.002
    crisis_growth_factor: float = -0.5
    default_habitability: float = 0.5
    default_stability: float = 50.0
    local_migration_cap: float = 0.002
    local_migration_urban_share: float = 0.6
    global_migration_rate: float = 0.001
    global_migration_cap: float = 0.002
    migration_event_threshold: int = 500

    # --- Stability ---
    surplus_stability_bonus: float = 2.0
    food_crisis_penalty: float = 10.0
    energy_crisis_penalty: float = 7.0
    law_popularity_weight: float = 0.01

    # --- Market ---
    max_open_listings: int = 20
    trade_event_threshold: float = 1000.0

    # --- Scheduling ---
    tick_interval_hours: int = 24
    tick_interval_seconds: float = 0.0
    autosave: bool = True
    # Autosaves kept on disk; 0 keeps all of them.
    autosave_keep: int = 10

    def level_factor(self, level: Union[str, TerritoryLevel]) -> float:
        """Research cost multiplier. A known level missing from the table counts as 1.0."""
        return float(self.level_factors.get(TerritoryLevel.parse(level).value, 1.0))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "WorldConfig":
        """
        Builds a config from a flat mapping, ignoring unknown keys.
        """
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            print(f"[Config] Warning: Ignoring unknown world settings: {unknown}")
        levels = {level.value for level in TerritoryLevel}
        stray = sorted(set(data.get("level_factors") or {}) - levels)
        if stray:
            print(f"[Config] Warning: level_factors for unknown levels: {stray}")
        return cls(**{k: v for k, v in data.items() if k in known})


class GameConfig:
    """
    Central configuration handler for the simulation server.

    Responsibilities:
    1. Resolve file paths dynamically (removing hardcoded strings).
    2. Manage the Mod Load Order via 'mods.json'.
    3. Provide access to Data directories and the merged world tuning.
    """
    def __init__(self, project_root: Path):
        self.project_root = project_root

        # Standard directory structure definitions
        self.modules_dir = project_root / "modules"
        self.user_data_dir = project_root / "user_data"
        self.mods_file = project_root / "mods.json"

        # Default load order (can be overridden by mods.json)
        self.active_mods: List[str] = ["base"]
        self._load_mods_manifest()

    def _load_mods_manifest(self):
        """Attempts to read the load order from mods.json."""
        if not self.mods_file.exists():
            return

        try:
            with open(self.mods_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
                # Expected format: {"active_mods": ["base", "my_mod"]}
                if "active_mods" in data and isinstance(data["active_mods"], list):
                    self.active_mods = data["active_mods"]
                    print(f"[Config] Active Mods: {self.active_mods}")
        except (OSError, ValueError) as e:
            print(f"[Config] Warning: Failed to parse mods.json: {e}")

    def get_data_dirs(self) -> List[Path]:
        """
        Returns a list of data directories for all active mods.
        Used by DataLoader to scan for content.
        """
        paths = []
        for mod in self.active_mods:
            p = self.modules_dir / mod / "data"
            if p.exists():
                paths.append(p)
        return paths

    def get_save_dir(self) -> Path:
        return self.user_data_dir / "saves"

    def load_world_config(self) -> WorldConfig:
        """
        Merges 'world.toml' from every active mod (later mods win) into a WorldConfig.

        Sections in the TOML file are only for readability; keys are flattened.
        """
        merged: Dict[str, Any] = {}
        for data_dir in self.get_data_dirs():
            toml_path = data_dir / "world.toml"
            if not toml_path.exists():
                continue
            with open(toml_path, "r", encoding="utf-8") as f:
                raw = rtoml.load(f)
            for key, value in raw.items():
                if isinstance(value, dict) and key != "level_factors":
                    merged.update(value)
                else:
                    merged[key] = value
            print(f"[Config] World settings merged from {toml_path}")

        return WorldConfig.from_mapping(merged)
