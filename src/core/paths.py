import os
from pathlib import Path
from typing import Optional

ROOT_ENV = "PLANET_ROOT"

class ProjectPaths:
    """
    Locates the server root: the directory holding `modules/` (mod data and
    systems) and `user_data/` (saves).

    `PLANET_ROOT` wins when set, so a deployment can keep its world data
    apart from the installed code. Otherwise the source checkout is used.
    """
    _root: Optional[Path] = None

    @classmethod
    def root(cls) -> Path:
        if cls._root is None:
            cls._root = cls._locate()
        return cls._root

    @classmethod
    def _locate(cls) -> Path:
        override = os.environ.get(ROOT_ENV)
        if override:
            return Path(override).expanduser().resolve()

        here = Path(__file__).resolve()
        for candidate in here.parents:
            if (candidate / "modules" / "base" / "mod.json").is_file():
                return candidate

        print(f"[Paths] Warning: no modules/base found above {here.parent}, set {ROOT_ENV}")
        return Path.cwd()

    @classmethod
    def reset(cls):
        """Forgets the cached root (tests switch PLANET_ROOT)."""
        cls._root = None

    @classmethod
    def modules(cls) -> Path:
        return cls.root() / "modules"
