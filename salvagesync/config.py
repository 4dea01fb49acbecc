from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from .errors import SetupError

APP_DIR = Path.home() / ".salvagesync"
CONFIG_PATH = APP_DIR / "config.json"


@dataclass(frozen=True)
class Settings:
    max_open_files: int = 512
    hash_workers: int = 1024
    watchdog_timeout_sec: float = 3600.0
    checkpoint_interval_sec: float = 60.0
    log_dir: Optional[Path] = None


def load_config_file(path: Optional[Path] = None) -> dict:
    """Read the JSON config. A missing file means defaults; a broken one is a setup error."""
    path = path or CONFIG_PATH
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise SetupError(f"Could not read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise SetupError(f"Config {path} must hold a JSON object")
    return data


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name == "log_dir":
        return Path(value).expanduser()
    if name in ("max_open_files", "hash_workers"):
        return int(value)
    return float(value)


def build_settings(config_path: Optional[Path] = None, **overrides: Any) -> Settings:
    """Defaults, then the config file, then non-None ``overrides`` (CLI flags)."""
    known = {f.name for f in fields(Settings)}
    saved = load_config_file(config_path)

    values = {}
    for source in (saved, overrides):
        for key, value in source.items():
            if key not in known or value is None:
                continue
            try:
                values[key] = _coerce(key, value)
            except (TypeError, ValueError) as e:
                raise SetupError(f"Invalid value for {key}: {value!r}") from e

    settings = replace(Settings(), **values)
    if settings.max_open_files < 2:
        raise SetupError("max_open_files must be at least 2 (a copy holds two handles)")
    if settings.hash_workers < 1:
        raise SetupError("hash_workers must be at least 1")
    if settings.watchdog_timeout_sec <= 0:
        raise SetupError("watchdog_timeout_sec must be positive")
    return settings


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_sync_paths(src: Path, dst: Path) -> tuple[Path, Path]:
    src = src.expanduser().resolve()
    dst = dst.expanduser().resolve()

    if not src.is_dir():
        raise SetupError(f"Source folder does not exist or is not a folder: {src}")
    if src == dst:
        raise SetupError("Source and destination folders must be different.")
    if _is_subpath(dst, src):
        raise SetupError("Destination folder must NOT be inside the source folder (would cause loops).")
    if _is_subpath(src, dst):
        raise SetupError("Source folder must NOT be inside the destination folder.")

    return src, dst
