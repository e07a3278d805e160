"""
Configuration loader for the ConverseFlows engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class EngineConfig:
    max_delivery_failures: int = 3          # consecutive failures before abort
    retry_backoff_seconds: float = 5.0      # base of the exponential retry backoff
    max_steps_per_run: int = 100            # node visits per synchronous run
    stale_running_seconds: int = 60         # a running state idle this long is resumed
    media_base_url: str = ""                # prefix for relative image URLs


@dataclass
class TimerConfig:
    poll_interval_seconds: float = 5.0      # seconds between due-timer sweeps
    missed_threshold_seconds: float = 30.0  # late firings beyond this are logged
    idempotency_ledger_size: int = 10000    # remembered fired timer keys


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./converse_flows.db"        # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend
    flow_backend: str = "memory"                       # "sql" | "memory"
    flows_dir: str = ""                                # flow documents loaded at startup


@dataclass
class LockConfig:
    backend: str = "memory"             # "memory" for one process, "redis" for several
    redis_url: str = "redis://localhost:6379"
    lease_seconds: float = 30.0         # lock auto-expires if the holder dies
    wait_seconds: float = 10.0          # max wait to acquire


@dataclass
class ActionConfig:
    type: str = "log"                   # "log" | "rest"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class ChannelConfig:
    enabled: bool = False
    credentials: dict[str, Any] = field(default_factory=dict)


@dataclass
class Settings:
    app_name: str = "ConverseFlows"
    debug: bool = False
    timezone: str = "UTC"
    engine: EngineConfig = field(default_factory=EngineConfig)
    timers: TimerConfig = field(default_factory=TimerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    actions: ActionConfig = field(default_factory=ActionConfig)
    channels: dict[str, ChannelConfig] = field(default_factory=dict)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values (unset → empty)."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _section(cls, raw: dict[str, Any], defaults):
    """Build a config dataclass from a raw section, ignoring unknown keys."""
    known = {k: v for k, v in (raw or {}).items() if k in cls.__dataclass_fields__}
    base = {k: getattr(defaults, k) for k in cls.__dataclass_fields__}
    base.update(known)
    return cls(**base)


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CONVERSE_FLOWS_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        if "engine" in raw:
            settings.engine = _section(EngineConfig, raw["engine"], settings.engine)
        if "timers" in raw:
            settings.timers = _section(TimerConfig, raw["timers"], settings.timers)
        if "database" in raw:
            settings.database = _section(DatabaseConfig, raw["database"], settings.database)
        if "locks" in raw:
            settings.locks = _section(LockConfig, raw["locks"], settings.locks)
        if "actions" in raw:
            settings.actions = _section(ActionConfig, raw["actions"], settings.actions)

        if "channels" in raw:
            for ch_name, ch_data in (raw["channels"] or {}).items():
                ch_data = ch_data or {}
                settings.channels[ch_name] = ChannelConfig(
                    enabled=ch_data.get("enabled", False),
                    credentials=ch_data.get("credentials", {}),
                )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
