"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from multichat.core.types import Provider


def _unset_to_none(value: Optional[str]) -> Optional[str]:
    # Unset ${VAR} placeholders are left as-is by interpolation
    if value is None or not str(value).strip() or str(value).startswith("${"):
        return None
    return value


class ProviderConfig(BaseModel):
    api_key: Optional[str] = None  # Platform-pooled key; None disables "provided" mode
    base_url: Optional[str] = None
    timeout: float = 60.0
    max_output_tokens: int = 1024

    @field_validator("api_key", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _unset_to_none(value)


class ProvidersConfig(BaseModel):
    openai: ProviderConfig = Field(default_factory=ProviderConfig)
    anthropic: ProviderConfig = Field(default_factory=ProviderConfig)
    gemini: ProviderConfig = Field(default_factory=ProviderConfig)

    def for_provider(self, provider: Provider) -> ProviderConfig:
        return getattr(self, provider.value)


class SecurityConfig(BaseModel):
    encryption_key: str  # 64 hex chars (32 bytes)

    @field_validator("encryption_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if len(value) != 64:
            raise ValueError("encryption_key must be 64 hex characters (32 bytes)")
        try:
            bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError("encryption_key must be hex encoded") from exc
        return value


class DispatchConfig(BaseModel):
    timeout: float = 90.0  # Per-slot bound, seconds
    chars_per_token: int = 4  # Admission-control estimate


class BillingConfig(BaseModel):
    free_allowance: int = 10000
    free_reset_days: int = 30
    refresh_check_minutes: int = 60
    stripe_secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_tolerance: int = 300
    price_tokens: dict[str, int] = Field(default_factory=dict)

    @field_validator("stripe_secret_key", "webhook_secret", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        return _unset_to_none(value)

    @field_validator("price_tokens")
    @classmethod
    def _positive_tokens(cls, value: dict[str, int]) -> dict[str, int]:
        for price_id, tokens in value.items():
            if tokens <= 0:
                raise ValueError(f"price '{price_id}' must map to a positive token count")
        return value


class SummaryConfig(BaseModel):
    max_response_chars: int = 1500


class StorageConfig(BaseModel):
    db_path: str = "./data/multichat.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_format: Literal["console", "json"] = "console"
    data_dir: str = "./data"
    security: SecurityConfig
    providers: ProvidersConfig = Field(default_factory=ProvidersConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    summary: SummaryConfig = Field(default_factory=SummaryConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")


def _interpolate(value: Any, extra: dict[str, str]) -> Any:
    """Substitute ${VAR} references in every string scalar of a parsed YAML tree.

    Lookup order is ``extra``, then the environment, then the inline default.
    References that resolve to nothing are left untouched so validators can
    tell an unset secret from an empty one.
    """
    if isinstance(value, dict):
        return {k: _interpolate(v, extra) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate(v, extra) for v in value]
    if not isinstance(value, str):
        return value

    def _replace(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        resolved = extra.get(name, os.environ.get(name, default))
        return match.group(0) if resolved is None else resolved

    return _ENV_VAR_PATTERN.sub(_replace, value)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from a YAML file, reading ``.env`` first if present."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    # data_dir may itself come from the environment and is referenced by other paths
    data_dir = _interpolate(str(raw.get("data_dir", "./data")), {})
    return AppConfig(**_interpolate(raw, {"data_dir": data_dir}))
