from __future__ import annotations
from .schemas import Config
from pathlib import Path
import tomllib

def load_config(path: str | Path) -> Config:
    p = Path(path)
    data = tomllib.loads(p.read_text())
    return Config(**data)

def snapshot_config_toml(path: str | Path) -> str:
    """Return the raw TOML text for embedding in output metadata."""
    return Path(path).read_text()

