from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Dict, Tuple

from pydantic import BaseModel, Field


class Settings(BaseModel):
    database_url: str = "sqlite+pysqlite:///./inventario.db"
    lock_timeout_ms: int = Field(default=5000, ge=0)
    log_level: str = "INFO"
    log_json: bool = False
    default_actor: str = "system"
    app_port: int = 10000
    reload: bool = False


_ENV_VARS: Dict[str, str] = {
    "database_url": "DATABASE_URL",
    "lock_timeout_ms": "LOCK_TIMEOUT_MS",
    "log_level": "LOG_LEVEL",
    "log_json": "LOG_JSON",
    "default_actor": "DEFAULT_ACTOR",
    "app_port": "APP_PORT",
    "reload": "RELOAD",
}

_SECTION = "inventario"

_cached_files: Dict[str, Tuple[Dict[str, str], float]] = {}


def _read_config_file(path: Path) -> Dict[str, str]:
    path_str = str(path)
    try:
        mtime = float(path.stat().st_mtime)
    except OSError:
        return {}

    cached = _cached_files.get(path_str)
    if cached is not None and cached[1] == mtime:
        return dict(cached[0])

    parser = configparser.ConfigParser()
    parser.read(path, encoding="utf-8")
    values: Dict[str, str] = {}
    if parser.has_section(_SECTION):
        for key, raw in parser.items(_SECTION):
            if key in Settings.model_fields:
                values[key] = (raw or "").strip()

    _cached_files[path_str] = (values, mtime)
    return dict(values)


def load_settings() -> Settings:
    """Settings from the optional INI file, overridden by environment variables."""
    path = Path(os.getenv("INVENTARIO_CONFIG_PATH", "inventario.conf"))
    values: Dict[str, str] = _read_config_file(path)

    for field, env_var in _ENV_VARS.items():
        raw = (os.getenv(env_var) or "").strip()
        if raw:
            values[field] = raw

    return Settings.model_validate(values)
