from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping
import os

import yaml

ENV_PREFIX = "ROOM_RESERVATION_"
CONFIG_ENV_VAR = ENV_PREFIX + "CONFIG"
DEFAULT_CONFIG_FILE = Path("config.yaml")
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class SettingsError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///data/room_reservation.db"
    data_dir: str = "data"
    lock_timeout: float = 5.0
    store_timeout: float = 5.0
    host: str = "127.0.0.1"
    port: int = 5000
    debug: bool = False
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if not self.database_url:
            raise SettingsError("database_url must not be empty")
        if self.lock_timeout <= 0:
            raise SettingsError("lock_timeout must be greater than zero")
        if self.store_timeout <= 0:
            raise SettingsError("store_timeout must be greater than zero")
        if not 0 < self.port < 65536:
            raise SettingsError("port must be between 1 and 65535")
        if self.log_level.upper() not in _LOG_LEVELS:
            raise SettingsError(f"log_level must be one of {sorted(_LOG_LEVELS)}")


def load_settings(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from defaults, an optional YAML file, then environment overrides.

    The file is ``path`` if given, else ``$ROOM_RESERVATION_CONFIG``, else
    ``config.yaml`` in the working directory when it exists. Environment
    variables are named ``ROOM_RESERVATION_<FIELD>``.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path) if path is not None else _default_config_path(env)

    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(_read_config_file(config_path))

    for field in fields(Settings):
        raw = env.get(ENV_PREFIX + field.name.upper())
        if raw is not None:
            values[field.name] = raw

    return replace(Settings(), **{name: _coerce(name, value) for name, value in values.items()})


def _default_config_path(env: Mapping[str, str]) -> Path | None:
    configured = env.get(CONFIG_ENV_VAR)
    if configured:
        return Path(configured)
    if DEFAULT_CONFIG_FILE.exists():
        return DEFAULT_CONFIG_FILE
    return None


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as error:
        raise SettingsError(f"Config file not found: {path}") from error
    except (OSError, yaml.YAMLError) as error:
        raise SettingsError(f"Could not read config file {path}: {error}") from error

    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise SettingsError(f"Config file {path} must contain a mapping")
    return payload


def _coerce(name: str, value: Any) -> Any:
    known = {field.name: field.type for field in fields(Settings)}
    if name not in known:
        raise SettingsError(f"Unknown setting: {name}")

    kind = known[name]
    try:
        if kind == "float":
            return float(value)
        if kind == "int":
            return int(value)
        if kind == "bool":
            return _to_bool(value)
    except (TypeError, ValueError) as error:
        raise SettingsError(f"Invalid value for {name}: {value!r}") from error
    return str(value)


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(value)
