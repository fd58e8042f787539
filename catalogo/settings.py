from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DB_FILENAME = "catalogo.sqlite"


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.resolve().as_posix()}"


def _anchor_sqlite_url(url: str) -> str:
    """sqlite:///instance/x.sqlite -> sqlite:////<project root>/instance/x.sqlite.

    Non-sqlite URLs, absolute paths and in-memory databases pass through.
    """
    prefix = "sqlite:///"
    if not url.startswith(prefix) or url.startswith(prefix + "/"):
        return url
    path_part, sep, query = url[len(prefix) :].partition("?")
    if not path_part or path_part == ":memory:" or Path(path_part).is_absolute():
        return url
    return _sqlite_url(PROJECT_ROOT / path_part) + sep + query


@dataclass(frozen=True)
class Settings:
    APP_NAME: str = _env("APP_NAME", "Sur Importaciones - Catálogo")
    LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

    INSTANCE_DIR: Path = Path(_env("INSTANCE_DIR", "instance"))
    # Empty means "<INSTANCE_DIR>/catalogo.sqlite".
    DATABASE_URL: str = _env("DATABASE_URL", "")

    EXCEL_IMPORT_PATH: str = _env("EXCEL_IMPORT_PATH", "productos.xlsx")
    UPLOADS_DIR: str = _env("UPLOADS_DIR", "uploads")

    # Mass plan association: sleep PAUSE_SECONDS every PAUSE_EVERY products (0 disables).
    MASS_ASSOCIATION_PAUSE_EVERY: int = int(_env("MASS_ASSOCIATION_PAUSE_EVERY", "10"))
    MASS_ASSOCIATION_PAUSE_SECONDS: float = float(_env("MASS_ASSOCIATION_PAUSE_SECONDS", "0.1"))
    MASS_ASSOCIATION_MAX_FAILURES: int = int(_env("MASS_ASSOCIATION_MAX_FAILURES", "5"))

    def __post_init__(self) -> None:
        instance_dir = Path(self.INSTANCE_DIR).resolve()
        object.__setattr__(self, "INSTANCE_DIR", instance_dir)

        url = str(self.DATABASE_URL or "").strip()
        url = _anchor_sqlite_url(url) if url else _sqlite_url(instance_dir / DB_FILENAME)
        object.__setattr__(self, "DATABASE_URL", url)

    @property
    def uploads_path(self) -> Path:
        return (self.INSTANCE_DIR / str(self.UPLOADS_DIR)).resolve()

    def ensure_instance(self) -> None:
        self.INSTANCE_DIR.mkdir(parents=True, exist_ok=True)
        self.uploads_path.mkdir(parents=True, exist_ok=True)
