import dataclasses
import polars as pl
import orjson
from pathlib import Path
from typing import Any, Dict

from src.engine.mechanics.listings import ListingBook
from src.server.io.save_writer import SAVE_FORMAT
from src.server.state import GameState, WorldState
from src.shared.config import GameConfig

class SaveStateLoader:
    """
    Rebuilds a GameState from a directory written by SaveWriter.
    Fields are matched by name against the GameState dataclass; transient
    fields get fresh defaults (new locks, empty event bus).
    """
    def __init__(self, config: GameConfig):
        self.config = config
        self.save_root = config.get_save_dir()

    def load(self, save_name: str) -> GameState:
        save_dir = self.save_root / save_name
        if not save_dir.is_dir():
            raise FileNotFoundError(f"Save '{save_name}' not found at {save_dir}")

        meta = self._read_meta(save_dir)
        if meta.get("format", 1) > SAVE_FORMAT:
            raise ValueError(f"Save '{save_name}' uses format {meta['format']}, newer than {SAVE_FORMAT}")

        saved_mods = meta.get("mods")
        if saved_mods and saved_mods != list(self.config.active_mods):
            print(f"[SaveLoader] Warning: '{save_name}' was written with mods {saved_mods}, "
                  f"active mods are {self.config.active_mods}")

        kwargs: Dict[str, Any] = {}
        for f in dataclasses.fields(GameState):
            if f.metadata.get("transient"):
                continue
            if f.name == "tables":
                kwargs["tables"] = {p.stem: pl.read_parquet(p) for p in sorted((save_dir / "tables").glob("*.parquet"))}
            elif f.name == "world":
                kwargs["world"] = WorldState.from_dict(meta.get("world") or {})
            elif f.name == "listings":
                frame_path = save_dir / "listings.parquet"
                kwargs["listings"] = ListingBook.from_frame(pl.read_parquet(frame_path) if frame_path.exists() else None)
            elif f.name in meta:
                kwargs[f.name] = meta[f.name]

        state = GameState(**kwargs)
        print(f"[SaveLoader] Restored '{save_name}': tick {state.world.tick_number}, "
              f"{len(state.tables)} tables, {len(state.listings)} listings")
        return state

    def _read_meta(self, save_dir: Path) -> Dict[str, Any]:
        meta_path = save_dir / "meta.json"
        if not meta_path.exists():
            print(f"[SaveLoader] Warning: {save_dir.name} has no meta.json, starting from tick 0")
            return {}
        return orjson.loads(meta_path.read_bytes())
