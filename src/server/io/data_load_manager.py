import orjson
import polars as pl
from pathlib import Path
from typing import Dict, List

from src.engine.mechanics.listings import ListingBook
from src.server.state import GameState, WorldState
from src.shared.config import GameConfig
from src.shared.errors import ValidationError
from src.shared.resources import EffectTag

# Primary key per table; rows from later mods replace rows with the same key.
TABLE_KEYS: Dict[str, str] = {
    "resource_balances": "territory_id",
    "wallets": "user_id",
    "token_balances": "user_id",
    "users": "user_id",
    "infrastructure_types": "key",
}

ID_COLUMNS = ("id", "territory_id", "owner_territory_id", "owner_id", "user_id", "cell_id", "region_id")

# Pipe-separated tag columns ("agriculture|energy").
TAG_COLUMNS = ("positive_effects", "negative_effects")

# resource_nodes entry type -> richness column
NODE_COLUMNS = {
    "food": "node_food",
    "energy": "node_energy",
    "minerals": "node_minerals",
    "technology": "node_tech",
}

class DataLoader:
    """
    Compiles a fresh GameState from the static TSV/TOML assets of the active mods.
    Saved sessions are restored by SaveStateLoader instead.
    """

    def __init__(self, config: GameConfig):
        self.config = config

    def load_initial_state(self) -> GameState:
        print("[DataLoader] Compiling initial state...")
        world = WorldState(config=self.config.load_world_config())
        state = GameState(world=world)

        for name, df in self._collect_tables().items():
            if name == "market_listings":
                state.listings = ListingBook.from_frame(df)
                continue
            if name == "cells":
                df = self._expand_resource_nodes(df)
            if name == "laws":
                df = self._split_tags(df)
                self._check_tags(df)
            state.update_table(name, df)
            print(f"[DataLoader] {name}: {df.height} rows")

        if state.listings is None:
            state.listings = ListingBook()
        return state

    def _collect_tables(self) -> Dict[str, pl.DataFrame]:
        """Reads every data/*.tsv of every active mod, merging same-named tables."""
        found: Dict[str, List[pl.DataFrame]] = {}
        for data_dir in self.config.get_data_dirs():
            for path in sorted(data_dir.glob("*.tsv")):
                df = self._read_clean_tsv(path)
                if df.width > 0:
                    found.setdefault(path.stem, []).append(df)

        tables = {}
        for name, frames in found.items():
            df = pl.concat(frames, how="diagonal_relaxed")
            key = TABLE_KEYS.get(name, "id")
            if key in df.columns:
                df = df.unique(subset=[key], keep="last", maintain_order=True)
            tables[name] = df
        return tables

    def _read_clean_tsv(self, path: Path) -> pl.DataFrame:
        """Reads TSV, ignoring '_' columns and null-filling numeric ones."""
        try:
            df = pl.read_csv(
                path,
                separator="\t",
                quote_char=None,
                infer_schema_length=1000,
            )
        except (OSError, pl.exceptions.PolarsError) as e:
            print(f"[DataLoader] Error reading {path.name}: {e}")
            return pl.DataFrame()

        df = df.select([c for c in df.columns if not c.startswith("_")])
        # Keys stay strings even when they look numeric.
        keys = [c for c in ID_COLUMNS if c in df.columns]
        if keys:
            df = df.with_columns(pl.col(keys).cast(pl.String))
        num_cols = [c for c, t in df.schema.items() if t.is_numeric()]
        if num_cols:
            df = df.with_columns(pl.col(num_cols).fill_null(0))
        return df

    def _split_tags(self, df: pl.DataFrame) -> pl.DataFrame:
        present = [c for c in TAG_COLUMNS if c in df.columns]
        return df.with_columns([
            pl.col(c).cast(pl.String).fill_null("").str.split("|")
            .list.eval(pl.element().str.strip_chars())
            .list.eval(pl.element().filter(pl.element() != ""))
            .alias(c)
            for c in present
        ])

    def _check_tags(self, df: pl.DataFrame):
        """Refuses to boot a world whose laws carry tags the engine does not know."""
        known = [tag.value for tag in EffectTag]
        bad = []
        for column in (c for c in TAG_COLUMNS if c in df.columns):
            rows = (
                df.select(["id", column]).explode(column)
                .filter(pl.col(column).is_not_null() & ~pl.col(column).str.to_lowercase().is_in(known))
            )
            bad.extend(f"{law_id}:{tag}" for law_id, tag in rows.iter_rows())
        if bad:
            raise ValidationError(f"Unknown law effect tags: {', '.join(bad)}")

    def _expand_resource_nodes(self, df: pl.DataFrame) -> pl.DataFrame:
        """
        Decodes the JSON 'resource_nodes' column ([{"type": "food", "richness": 0.8}, ...])
        into one richness column per resource. The first node of a type wins.
        """
        if "resource_nodes" not in df.columns:
            return df.with_columns([pl.lit(0.0).alias(c) for c in NODE_COLUMNS.values() if c not in df.columns])

        columns: Dict[str, List[float]] = {c: [] for c in NODE_COLUMNS.values()}
        for raw in df.get_column("resource_nodes").cast(pl.String).to_list():
            nodes = orjson.loads(raw) if raw else []
            richness: Dict[str, float] = {}
            for node in nodes:
                column = NODE_COLUMNS.get(node.get("type"))
                value = node.get("richness")
                if column and column not in richness and isinstance(value, (int, float)):
                    richness[column] = float(value)
            for column, values in columns.items():
                values.append(richness.get(column, 0.0))

        return df.drop("resource_nodes").with_columns([
            pl.Series(name, values, dtype=pl.Float64) for name, values in columns.items()
        ])
