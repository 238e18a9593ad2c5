"""Central config loading from layered TOML files.

Layers (low to high priority):
1. csl/config/default.toml
2. ~/.csl/config.toml
3. CSL_CONFIG env path (optional explicit override)

The ingest token is read from environment variables only.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = PACKAGE_DIR / "default.toml"
USER_CONFIG_PATH = Path.home() / ".csl" / "config.toml"
GLOBAL_DATA_DIR = Path.home() / ".csl"
DEFAULT_WATCH_DIR = Path.home() / ".claude" / "projects"

STATE_FILE_NAME = "state.json"
BUFFER_FILE_NAME = "buffer.sqlite3"

_LAST_CONFIG_SOURCES: list[dict[str, str]] = []


def load_toml_file(path: Path | None) -> dict[str, Any]:
    """Load TOML file into a dict; return empty dict on failures."""
    if not path or not path.exists():
        return {}
    try:
        with path.open("rb") as handle:
            payload = tomllib.load(handle)
    except (OSError, tomllib.TOMLDecodeError):
        return {}
    return payload if isinstance(payload, dict) else {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep-merge dict values with override precedence."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _expand(value: Any, default: Path) -> Path:
    """Expand user path with fallback to default path."""
    if value in (None, ""):
        return default
    try:
        return Path(str(value)).expanduser()
    except (TypeError, OSError, ValueError):
        return default


def _to_non_empty_string(value: Any) -> str:
    """Convert value to stripped string, defaulting to empty string."""
    if value is None:
        return ""
    return str(value).strip()


def _to_int(value: Any, default: int, minimum: int = 1) -> int:
    """Convert value to bounded integer with fallback default."""
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(minimum, parsed)


def _section(payload: dict[str, Any], name: str) -> dict[str, Any]:
    """Return one TOML table, or an empty dict when absent or malformed."""
    value = payload.get(name, {})
    return value if isinstance(value, dict) else {}


def get_user_config_path() -> Path:
    """Return canonical user config path."""
    return USER_CONFIG_PATH


def _load_layers() -> tuple[dict[str, Any], list[dict[str, str]]]:
    """Load and merge all configuration layers in precedence order."""
    merged: dict[str, Any] = {}
    sources: list[dict[str, str]] = []

    layers: list[tuple[str, Path]] = [
        ("package_default", DEFAULT_CONFIG_PATH),
        ("user", USER_CONFIG_PATH),
    ]

    explicit = os.getenv("CSL_CONFIG")
    if explicit:
        layers.append(("explicit", Path(explicit).expanduser()))

    for source_name, path in layers:
        payload = load_toml_file(path)
        if payload:
            merged = _deep_merge(merged, payload)
            sources.append({"source": source_name, "path": str(path)})

    return merged, sources


def get_config_sources() -> list[dict[str, str]]:
    """Return last-computed config source list."""
    return [dict(item) for item in _LAST_CONFIG_SOURCES]


@dataclass(frozen=True)
class Config:
    """Effective runtime configuration from TOML layers and environment."""

    data_dir: Path
    watch_dir: Path
    watch_debounce_ms: int
    watch_initial_scan: bool

    ingest_url: str
    ingest_token: str | None
    retry_interval_ms: int
    request_timeout_seconds: int
    delivery_max_workers: int

    state_debounce_ms: int

    @property
    def state_path(self) -> Path:
        """Offset store document under the data directory."""
        return self.data_dir / STATE_FILE_NAME

    @property
    def buffer_db_path(self) -> Path:
        """SQLite retry buffer under the data directory."""
        return self.data_dir / BUFFER_FILE_NAME

    def public_dict(self) -> dict[str, Any]:
        """Return safe serialized config for CLI visibility."""
        return {
            "data_dir": str(self.data_dir),
            "state_path": str(self.state_path),
            "buffer_db_path": str(self.buffer_db_path),
            "watch_dir": str(self.watch_dir),
            "watch_debounce_ms": self.watch_debounce_ms,
            "watch_initial_scan": self.watch_initial_scan,
            "ingest_url": self.ingest_url,
            "ingest_token": "***" if self.ingest_token else None,
            "retry_interval_ms": self.retry_interval_ms,
            "request_timeout_seconds": self.request_timeout_seconds,
            "delivery_max_workers": self.delivery_max_workers,
            "state_debounce_ms": self.state_debounce_ms,
        }


@lru_cache(maxsize=1)
def load_config() -> Config:
    """Load effective config from TOML layers plus env overrides."""
    load_dotenv()
    toml_data, sources = _load_layers()

    global _LAST_CONFIG_SOURCES
    _LAST_CONFIG_SOURCES = sources

    data = _section(toml_data, "data")
    watch = _section(toml_data, "watch")
    ingest = _section(toml_data, "ingest")
    state = _section(toml_data, "state")

    ingest_url = _to_non_empty_string(
        os.environ.get("CSL_INGEST_URL")
    ) or _to_non_empty_string(ingest.get("url"))

    return Config(
        data_dir=_expand(data.get("dir"), GLOBAL_DATA_DIR),
        watch_dir=_expand(watch.get("dir"), DEFAULT_WATCH_DIR),
        watch_debounce_ms=_to_int(watch.get("debounce_ms"), 1600, minimum=10),
        watch_initial_scan=bool(watch.get("initial_scan", True)),
        ingest_url=ingest_url,
        ingest_token=_to_non_empty_string(os.environ.get("CSL_INGEST_TOKEN"))
        or None,
        retry_interval_ms=_to_int(ingest.get("retry_interval_ms"), 30000, minimum=100),
        request_timeout_seconds=_to_int(ingest.get("timeout_seconds"), 30, minimum=1),
        delivery_max_workers=_to_int(ingest.get("max_workers"), 4, minimum=1),
        state_debounce_ms=_to_int(state.get("debounce_ms"), 1000, minimum=0),
    )


def get_config() -> Config:
    """Return cached effective configuration."""
    return load_config()


def reload_config() -> Config:
    """Clear config cache and return reloaded configuration."""
    load_config.cache_clear()
    return load_config()
