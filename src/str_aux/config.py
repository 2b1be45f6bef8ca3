"""Runtime settings.

Resolution order (later wins):

    1. Field defaults below.
    2. ``.env`` in the working directory (python-dotenv; never overrides
       variables already set in the process environment).
    3. Optional YAML file with a top-level mapping of field names.
    4. Environment variables ``STR_AUX_<FIELD>`` plus ``DATABASE_URL``.

Usage::

    settings = load_settings("config/str_aux.yaml")
    settings.validate_required()
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger: logging.Logger = logging.getLogger(__name__)

ENV_PREFIX: str = "STR_AUX_"
DEFAULT_DATABASE_URL: str = "sqlite+aiosqlite:///./str_aux.db"


class ConfigurationError(ValueError):
    """A required identifier is missing; raised once at startup."""


class StrAuxSettings(BaseModel):
    symbols: list[str] = Field(default_factory=list)
    session_id: str = "ui"

    # sampling
    step_ms: float = 5_000.0
    poll_interval_s: float = 1.0
    min_bucket_snapshots: int = 2
    persist_delay_s: float = 5.0
    universe_refresh_s: float = 60.0
    depth: int = 50
    live_polling: bool = False
    flush_timers: bool = True
    persistence_enabled: bool = True

    # stats
    epsilon_pct: float = 0.35
    shift_k: int = 5
    default_bins: int = 256
    top_k: int = 8
    min_points: int = 3
    history_limit: int = 256

    # infrastructure
    database_url: str = DEFAULT_DATABASE_URL
    binance_base_url: str = "https://api.binance.com"
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    host: str = "0.0.0.0"
    port: int = 8000

    @field_validator("symbols", "cors_origins", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("symbols")
    @classmethod
    def _upper_symbols(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        for sym in value:
            sym = sym.strip().upper()
            if sym and sym not in out:
                out.append(sym)
        return out

    @field_validator("step_ms", "poll_interval_s", "persist_delay_s", "universe_refresh_s")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError(f"must be > 0, got {value}")
        return value

    @field_validator("min_bucket_snapshots", "shift_k", "default_bins", "top_k", "min_points", "history_limit")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError(f"must be >= 1, got {value}")
        return value

    def validate_required(self) -> None:
        """Raise ``ConfigurationError`` when a required identifier is missing."""
        if not self.session_id.strip():
            raise ConfigurationError("session_id must not be blank")
        if self.live_polling and not self.symbols:
            raise ConfigurationError(
                "live_polling is enabled but no symbols are configured "
                f"(set {ENV_PREFIX}SYMBOLS or 'symbols' in the settings file)"
            )


def load_yaml_mapping(path: Path) -> dict[str, Any]:
    """Read a YAML file that must contain a top-level mapping.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the document is empty or not a mapping.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")
    raw = yaml.safe_load(path.read_text())
    if raw is None:
        raise ValueError(f"Settings file is empty: {path}")
    if not isinstance(raw, dict):
        raise ValueError(
            f"Expected YAML mapping at top level, got {type(raw).__name__}: {path}"
        )
    return raw


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for name in StrAuxSettings.model_fields:
        value = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        overrides["database_url"] = database_url
    return overrides


def load_settings(path: str | Path | None = None, env_file: str | Path | None = None) -> StrAuxSettings:
    """Build settings from defaults, ``.env``, an optional YAML file and the environment.

    Raises:
        FileNotFoundError: If ``path`` is given but missing.
        ValueError: If the YAML document is not a mapping or a value fails
            validation (pydantic's ``ValidationError`` is a ``ValueError``).
    """
    load_dotenv(Path(env_file) if env_file is not None else Path.cwd() / ".env")
    values: dict[str, Any] = {}
    if path is not None:
        values.update(load_yaml_mapping(Path(path)))
        logger.info("Loaded settings file %s", path)
    values.update(_env_overrides())
    return StrAuxSettings(**values)
