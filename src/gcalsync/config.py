"""Configuration loader for gcalsync.

This module provides:
- Typed config models (pydantic BaseModel)
- Precedence-aware loader: file (YAML) < ENV (GCALSYNC__*) < CLI overrides
- Minimal coercion for ENV values (bool/int/float/list)

ENV format (nested via delimiter):
  GCALSYNC__google__token_store=/data/google_token.json
  GCALSYNC__sync__delete_enabled=false
  GCALSYNC__sync__cache_timeout_sec=300
  GCALSYNC__calendars__work__calendar_id=primary

CLI overrides can pass a nested dict, e.g.:
  {"sync": {"extended_sync": True}, "logging": {"level": "DEBUG"}}

Example:
  cfg = load_config("/data/config.yaml", cli_overrides={"sync": {"delete_enabled": False}})
  for name, cal in cfg.calendars.items():
      print(name, cal.ics_url)
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

# ----------------------------
# Pydantic models (typed config)
# ----------------------------

_ALARM_METHODS = {"popup", "email", "sms"}


class GoogleConfig(BaseModel):
    credentials_file: str | None = None  # or GOOGLE_CREDENTIALS_JSON via ENV
    token_store: str = "/data/google_token.json"
    # Reminder methods attached to every converted alarm
    alarm_methods: list[str] = Field(default_factory=lambda: ["popup"])
    send_invitations: bool = False

    @field_validator("alarm_methods")
    @classmethod
    def _validate_alarm_methods(cls, v: list[str]) -> list[str]:
        out = [m.strip().lower() for m in v if m and m.strip()]
        for m in out:
            if m not in _ALARM_METHODS:
                raise ValueError(f"google.alarm_methods entries must be one of {sorted(_ALARM_METHODS)}")
        return out


class CalendarConfig(BaseModel):
    # Private iCal export of the remote calendar (".../private-<hash>/basic.ics")
    ics_url: str
    calendar_id: str = "primary"
    local_file: str | None = None
    username: str | None = None

    @field_validator("ics_url")
    @classmethod
    def _validate_ics_url(cls, v: str) -> str:
        # Require explicit scheme to avoid misconfig
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("calendars.*.ics_url must start with http:// or https://")
        return v


class SyncConfig(BaseModel):
    delete_enabled: bool = True
    # Compare attendees/status/alarms/categories/priority/url as well
    extended_sync: bool = False
    # Retry cap for remote mutations (0..10)
    max_retries: int = Field(5, ge=0, le=10)
    # Fixed pause between two attempts (>0..60s)
    retry_interval_sec: float = Field(1.0, gt=0, le=60)
    cache_timeout_sec: int = Field(180, ge=60)
    feed_cache_timeout_sec: int = Field(3600, ge=60)
    max_cache_entries: int = Field(100, ge=1, le=10000)
    # 0 disables backups (and removes existing ones)
    backup_timeout_days: int = Field(7, ge=0, le=365)
    # Minimum content score for binding a local event to a remote candidate
    match_threshold: int = Field(2, ge=1, le=5)
    poll_interval_sec: float = Field(10.0, gt=0, le=3600)


class StateConfig(BaseModel):
    work_dir: str = "/data/gcalsync"

    @property
    def registry_path(self) -> str:
        return str(Path(self.work_dir) / "event-registry.txt")


class LoggingConfig(BaseModel):
    # Allow using alias "json" in config/env while avoiding BaseModel.json clash
    model_config = ConfigDict(populate_by_name=True)
    level: str = "INFO"
    as_json: bool = Field(False, alias="json")

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, v: str) -> str:
        lv = (v or "INFO").upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if lv not in allowed:
            raise ValueError(f"logging.level must be one of {sorted(allowed)}")
        return lv


def _default_logging_config() -> LoggingConfig:
    return LoggingConfig(json=False)


class RuntimeConfig(BaseModel):
    lock_path: str = "/tmp/gcalsync.lock"


def _default_google_config() -> GoogleConfig:
    return GoogleConfig()


def _default_sync_config() -> SyncConfig:
    return SyncConfig()


def _default_state_config() -> StateConfig:
    return StateConfig()


def _default_runtime_config() -> RuntimeConfig:
    return RuntimeConfig()


class AppConfig(BaseModel):
    google: GoogleConfig = Field(default_factory=_default_google_config)
    calendars: dict[str, CalendarConfig] = Field(default_factory=dict)
    sync: SyncConfig = Field(default_factory=_default_sync_config)
    state: StateConfig = Field(default_factory=_default_state_config)
    logging: LoggingConfig = Field(default_factory=_default_logging_config)
    runtime: RuntimeConfig = Field(default_factory=_default_runtime_config)


__all__ = [
    "AppConfig",
    "CalendarConfig",
    "GoogleConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "StateConfig",
    "SyncConfig",
    "load_config",
    "merge_dicts",
    "read_env_config",
    "read_yaml_config",
]


# ----------------------------
# Utilities
# ----------------------------


_BOOL_TRUE = {"1", "true", "yes", "on", "y", "t"}
_BOOL_FALSE = {"0", "false", "no", "off", "n", "f"}

_LIST_SPLIT_RE = re.compile(r"\s*,\s*")


def _coerce_value(val: str) -> Any:
    """Best-effort coercion for ENV values."""
    s = val.strip()

    ls = s.lower()
    if ls in _BOOL_TRUE:
        return True
    if ls in _BOOL_FALSE:
        return False

    if re.fullmatch(r"[+-]?\d+", s):
        return int(s)
    if re.fullmatch(r"[+-]?\d+\.\d*", s):
        return float(s)

    # lists (comma-separated); URLs never contain a bare comma in practice
    if "," in s and "://" not in s:
        return [p for p in _LIST_SPLIT_RE.split(s) if p != ""]

    return s


def merge_dicts(
    base: MutableMapping[str, Any], override: Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Deep-merge override into base (mutates base). Lists/atoms are replaced."""
    for k, v in override.items():
        if k in base and isinstance(base[k], dict) and isinstance(v, Mapping):
            merge_dicts(base[k], v)
        else:
            base[k] = v
    return base


def read_yaml_config(path: Path | None) -> dict[str, Any]:
    if not path:
        return {}
    p = Path(path).resolve()

    # Keep config reads inside the usual locations
    allowed_prefixes = [
        Path.home(),
        Path("/data"),
        Path("/opt/gcalsync"),
        Path("/etc/gcalsync"),
        Path.cwd(),
        Path("/tmp"),
        Path("/var/tmp"),
    ]

    path_allowed = False
    for prefix in allowed_prefixes:
        try:
            p.relative_to(prefix.resolve())
            path_allowed = True
            break
        except ValueError:
            continue

    if not path_allowed:
        raise ValueError(
            f"Configuration file path '{p}' is outside allowed directories. "
            f"Allowed prefixes: {[str(prefix) for prefix in allowed_prefixes]}"
        )

    if not p.exists():
        return {}
    with p.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Top-level YAML must be a mapping in {p}")
        return data


def read_env_config(prefix: str = "GCALSYNC__", nested_delim: str = "__") -> dict[str, Any]:
    """Build nested dict from environment variables.

    Keys must start with `prefix` (default 'GCALSYNC__').
    Nested keys split by `nested_delim`.

    Example:
      GCALSYNC__sync__max_retries=3
      GCALSYNC__calendars__home__ics_url=https://calendar.google.com/.../basic.ics
    """
    if not prefix.endswith(nested_delim):
        raise ValueError("prefix must end with the nested_delim (default 'GCALSYNC__' and '__').")

    result: dict[str, Any] = {}
    plen = len(prefix)
    for key, raw in os.environ.items():
        if not key.startswith(prefix):
            continue
        path_parts = key[plen:].split(nested_delim)
        cursor = result
        for part in path_parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path_parts[-1]] = _coerce_value(raw)
    return result


# ----------------------------
# Loader (precedence: file < env < cli_overrides)
# ----------------------------


def load_config(
    file_path: str | Path | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
    env_prefix: str = "GCALSYNC__",
    env_nested_delim: str = "__",
) -> AppConfig:
    """Load AppConfig with precedence: file < env < CLI overrides.

    Args:
        file_path: YAML path or None
        cli_overrides: nested mapping of overrides (e.g., from CLI args)
        env_prefix: environment variable prefix (must end with env_nested_delim)
        env_nested_delim: nested delimiter for env vars

    Returns:
        AppConfig instance (validated)
    """
    merged: dict[str, Any] = {}

    merge_dicts(merged, read_yaml_config(Path(file_path) if file_path else None))
    merge_dicts(merged, read_env_config(prefix=env_prefix, nested_delim=env_nested_delim))

    if cli_overrides:
        if not isinstance(cli_overrides, Mapping):
            raise TypeError("cli_overrides must be a mapping (nested dict-like).")
        merge_dicts(merged, cli_overrides)

    try:
        return AppConfig.model_validate(merged)
    except ValidationError as ve:
        raise ValueError(f"Invalid configuration: {ve}") from ve
