"""Settings loaded from the environment (and a local .env file)."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError
from .nudges import NudgeThresholds

DEFAULT_DB_PATH = Path.home() / ".project-autopilot" / "autopilot.db"
DEFAULT_USER_ID = "user_local_dev"
DEFAULT_PORT = 7777


@dataclass
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    user_id: str = DEFAULT_USER_ID
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    tick_seconds: float = 1.0
    log_level: str = "INFO"
    thresholds: NudgeThresholds = field(default_factory=NudgeThresholds)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{raw}'")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got '{raw}'")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None, dotenv: bool = True) -> Settings:
    """Build Settings from `env` (defaults to os.environ after loading .env)."""
    if env is None:
        if dotenv:
            load_dotenv()
        env = os.environ

    log_level = env.get("AUTOPILOT_LOG_LEVEL", "INFO").upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"Invalid AUTOPILOT_LOG_LEVEL '{log_level}'")

    thresholds = NudgeThresholds(
        debug_checkpoint=_int(env, "AUTOPILOT_DEBUG_CHECKPOINT_SECONDS", NudgeThresholds.debug_checkpoint),
        debug_cutoff=_int(env, "AUTOPILOT_DEBUG_CUTOFF_SECONDS", NudgeThresholds.debug_cutoff),
        building_break=_int(env, "AUTOPILOT_BUILDING_BREAK_SECONDS", NudgeThresholds.building_break),
    )
    if thresholds.debug_cutoff <= thresholds.debug_checkpoint:
        raise ConfigError("AUTOPILOT_DEBUG_CUTOFF_SECONDS must be greater than the checkpoint")

    db_raw = env.get("AUTOPILOT_DB")
    return Settings(
        db_path=Path(db_raw).expanduser() if db_raw else DEFAULT_DB_PATH,
        user_id=env.get("AUTOPILOT_USER_ID") or DEFAULT_USER_ID,
        host=env.get("AUTOPILOT_HOST") or "127.0.0.1",
        port=_int(env, "AUTOPILOT_PORT", DEFAULT_PORT),
        tick_seconds=_float(env, "AUTOPILOT_TICK_SECONDS", 1.0),
        log_level=log_level,
        thresholds=thresholds,
    )
