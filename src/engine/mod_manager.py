import json
import importlib.util
import inspect
import sys
from pathlib import Path
from dataclasses import dataclass, field
from types import ModuleType
from typing import List, Dict, Optional

from src.shared.config import GameConfig
from src.engine.interfaces import ISystem

class ModError(RuntimeError):
    """A mod set that cannot be loaded (missing or circular dependency)."""

@dataclass
class ModManifest:
    id: str
    name: str
    version: str
    dependencies: List[str] = field(default_factory=list)
    path: Path = field(default_factory=Path)

    @classmethod
    def read(cls, mod_dir: Path) -> "ModManifest":
        with open(mod_dir / "mod.json", "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls(
            id=data.get("id", mod_dir.name),
            name=data.get("name", mod_dir.name),
            version=data.get("version", "0.0.1"),
            dependencies=list(data.get("dependencies", [])),
            path=mod_dir,
        )

class ModManager:
    """
    Finds the mods under `modules/`, orders the active ones (plus whatever
    they depend on) so that a dependency always loads first, and collects
    the tick systems they ship.
    """

    def __init__(self, config: GameConfig):
        self.config = config
        self.modules_dir = config.modules_dir
        self.loaded_mods: List[ModManifest] = []

    def discover(self) -> Dict[str, ModManifest]:
        if not self.modules_dir.is_dir():
            print(f"[ModManager] Warning: no modules directory at {self.modules_dir}")
            return {}

        found: Dict[str, ModManifest] = {}
        for mod_dir in sorted(p for p in self.modules_dir.iterdir() if (p / "mod.json").is_file()):
            try:
                manifest = ModManifest.read(mod_dir)
            except (OSError, ValueError) as e:
                print(f"[ModManager] Skipping {mod_dir.name}: unreadable mod.json ({e})")
                continue
            found[manifest.id] = manifest
        return found

    def resolve_load_order(self) -> List[ModManifest]:
        """
        Active mods in load order. Raises ModError when a required mod is
        absent or two mods require each other.
        """
        available = self.discover()
        order: List[ModManifest] = []
        state: Dict[str, str] = {}  # mod id -> "visiting" | "done"

        def visit(mod_id: str, required_by: Optional[str]):
            mark = state.get(mod_id)
            if mark == "done":
                return
            if mark == "visiting":
                raise ModError(f"Circular dependency detected involving '{mod_id}'")
            if mod_id not in available:
                who = f" (required by '{required_by}')" if required_by else ""
                raise ModError(f"Missing dependency: '{mod_id}'{who}")

            state[mod_id] = "visiting"
            for dep in available[mod_id].dependencies:
                visit(dep, mod_id)
            state[mod_id] = "done"
            order.append(available[mod_id])

        try:
            for mod_id in self.config.active_mods:
                visit(mod_id, None)
        except ModError as e:
            print(f"[ModManager] CRITICAL: {e}")
            raise

        self.loaded_mods = order
        print(f"[ModManager] Load order: {' -> '.join(m.id for m in order)}")
        return order

    def load_systems(self) -> List[ISystem]:
        """
        One instance of every ISystem subclass defined in
        `modules/<mod>/systems/*.py` of the loaded mods. Files starting with
        '_' are helpers, not systems.
        """
        systems: List[ISystem] = []
        for mod in self.loaded_mods:
            systems_dir = mod.path / "systems"
            if not systems_dir.is_dir():
                continue
            for py_file in sorted(systems_dir.glob("[!_]*.py")):
                module = self._import_system_file(mod, py_file)
                if module is None:
                    continue
                for _, cls in inspect.getmembers(module, inspect.isclass):
                    if issubclass(cls, ISystem) and not inspect.isabstract(cls) and cls.__module__ == module.__name__:
                        system = cls()
                        if not system.id.startswith(f"{mod.id}."):
                            print(f"[ModManager] Warning: system '{system.id}' in mod '{mod.id}' "
                                  f"is outside the '{mod.id}.' namespace")
                        print(f"[ModManager] Registering system {system.id} ({cls.__name__})")
                        systems.append(system)
        return systems

    def _import_system_file(self, mod: ModManifest, py_file: Path) -> Optional[ModuleType]:
        module_name = f"modules.{mod.id}.systems.{py_file.stem}"
        if module_name in sys.modules:
            return sys.modules[module_name]

        spec = importlib.util.spec_from_file_location(module_name, py_file)
        if spec is None or spec.loader is None:
            return None
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            # A broken mod file must not take the server down.
            del sys.modules[module_name]
            print(f"[ModManager] Error loading {py_file}: {e}")
            return None
        return module
