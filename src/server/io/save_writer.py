import dataclasses
import re
import shutil
import polars as pl
import orjson
from pathlib import Path
from datetime import datetime, timezone
from typing import List, Dict, Any, Optional, Tuple

from src.server.state import GameState
from src.shared.config import GameConfig

SAVE_FORMAT = 2
AUTOSAVE_PATTERN = re.compile(r"^tick_\d{6,}$")

def autosave_name(tick_number: int) -> str:
    return f"tick_{tick_number:06d}"

class SaveWriter:
    """
    Writes world snapshots to `user_data/saves/<name>/`:

        tables/<table>.parquet   every simulation table
        listings.parquet         the listing book, row state included
        meta.json                world row, save format, active mods

    A snapshot is written into `<name>_tmp/` and renamed into place only once
    complete, so a crash mid-write never replaces a good save with half of one.
    """

    def __init__(self, config: GameConfig):
        self.config = config
        self.save_root = config.get_save_dir()
        self.save_root.mkdir(parents=True, exist_ok=True)

    def save_tick(self, state: GameState) -> bool:
        """Autosave for the last completed tick, then drop autosaves past `autosave_keep`."""
        if not self.save_game(state, autosave_name(state.world.tick_number)):
            return False
        keep = state.config.autosave_keep
        if keep > 0:
            self.prune_autosaves(keep)
        return True

    def save_game(self, state: GameState, save_name: str) -> bool:
        name = re.sub(r"[^A-Za-z0-9 _-]", "", save_name).strip()
        if not name:
            print(f"[SaveWriter] Error: Refusing save name '{save_name}'")
            return False

        final_dir = self.save_root / name
        staging_dir = self.save_root / f"{name}_tmp"
        try:
            shutil.rmtree(staging_dir, ignore_errors=True)
            staging_dir.mkdir()

            frames, meta = self._snapshot(state)
            (staging_dir / "tables").mkdir()
            for rel_path, df in frames.items():
                df.write_parquet(staging_dir / rel_path)
            (staging_dir / "meta.json").write_bytes(orjson.dumps(meta, option=orjson.OPT_INDENT_2))

            shutil.rmtree(final_dir, ignore_errors=True)
            staging_dir.rename(final_dir)
        except (OSError, pl.exceptions.PolarsError, orjson.JSONEncodeError) as e:
            print(f"[SaveWriter] Critical Save Failure for '{name}': {e}")
            shutil.rmtree(staging_dir, ignore_errors=True)
            return False

        print(f"[SaveWriter] Saved '{name}' at tick {state.world.tick_number} ({len(frames)} frames).")
        return True

    def _snapshot(self, state: GameState) -> Tuple[Dict[str, pl.DataFrame], Dict[str, Any]]:
        """
        Splits the persistent GameState fields into parquet frames and JSON metadata.
        TRANSIENT fields (tick scratch data, event bus, locks) are left out.
        """
        frames: Dict[str, pl.DataFrame] = {}
        meta: Dict[str, Any] = {
            "format": SAVE_FORMAT,
            "written_at": datetime.now(timezone.utc).isoformat(),
            "mods": list(self.config.active_mods),
        }

        for f in dataclasses.fields(state):
            if f.metadata.get("transient"):
                continue
            value = getattr(state, f.name)
            if value is None:
                continue

            if f.name == "tables":
                for table_name, df in value.items():
                    frames[f"tables/{table_name}.parquet"] = df
            elif hasattr(value, "to_frame"):
                frames[f"{f.name}.parquet"] = value.to_frame()
            elif dataclasses.is_dataclass(value):
                meta[f.name] = dataclasses.asdict(value)
            else:
                meta[f.name] = value

        return frames, meta

    def prune_autosaves(self, keep: int) -> List[str]:
        """Deletes all but the `keep` newest tick autosaves. Named saves are untouched."""
        autosaves = [s["name"] for s in self.get_available_saves() if AUTOSAVE_PATTERN.match(s["name"])]
        removed = [name for name in autosaves[keep:] if self.delete_save(name)]
        return removed

    def delete_save(self, save_name: str) -> bool:
        target = self.save_root / save_name
        if not target.is_dir():
            return False
        shutil.rmtree(target)
        print(f"[SaveWriter] Deleted save '{save_name}'.")
        return True

    def get_available_saves(self) -> List[Dict[str, Any]]:
        """Readable saves, newest tick first."""
        saves = []
        for save_dir in self.save_root.iterdir():
            meta = self._read_meta(save_dir)
            if meta is None:
                continue
            saves.append({
                "name": save_dir.name,
                "timestamp": meta.get("written_at", ""),
                "tick": (meta.get("world") or {}).get("tick_number", 0),
                "mods": meta.get("mods", []),
            })
        saves.sort(key=lambda s: (s["tick"], s["timestamp"]), reverse=True)
        return saves

    def latest_save(self) -> Optional[str]:
        saves = self.get_available_saves()
        return saves[0]["name"] if saves else None

    def _read_meta(self, save_dir: Path) -> Optional[Dict[str, Any]]:
        meta_file = save_dir / "meta.json"
        if not save_dir.is_dir() or save_dir.name.endswith("_tmp") or not meta_file.exists():
            return None
        try:
            return orjson.loads(meta_file.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            print(f"[SaveWriter] Skipping unreadable save '{save_dir.name}': {e}")
            return None
