"""
config/settings.py — JulesBridge Runtime Settings

Merges config.yaml (defaults/structure) with .env (secrets).
Pydantic-powered — all fields are validated and typed.

  - Every section validates its own ranges at parse time
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a clear, human-readable message listing every problem
  - load_settings() respects JULESBRIDGE_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_KNOWN_PROVIDERS = {"openai", "gemini"}

_DEFAULT_FILLER_PHRASES = [
    "Still working on it…",
    "Jules is busy with your task, hang tight.",
    "No news yet, the agent is still going.",
    "Working away in the background…",
    "Still crunching through the code.",
]


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class JulesConfig(BaseModel):
    base_url: str = "https://jules.googleapis.com/v1alpha"
    request_timeout_seconds: float = 30.0
    page_size: int = 50
    automation_mode: str = "AUTO_CREATE_PR"
    require_plan_approval: bool = True
    starting_branch: str = "main"
    session_title_prefix: str = "Telegram Session"

    @field_validator("base_url")
    @classmethod
    def _strip_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("jules.request_timeout_seconds must be > 0")
        return v

    @field_validator("page_size")
    @classmethod
    def _valid_page_size(cls, v: int) -> int:
        if not (1 <= v <= 100):
            raise ValueError("jules.page_size must be between 1 and 100")
        return v


class MonitorConfig(BaseModel):
    poll_interval_seconds: float = 5.0
    timeout_seconds: float = 600.0
    idle_threshold_seconds: float = 60.0
    filler_phrases: List[str] = Field(default_factory=lambda: list(_DEFAULT_FILLER_PHRASES))

    @field_validator("poll_interval_seconds", "idle_threshold_seconds")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("monitor intervals must be > 0")
        return v

    @field_validator("filler_phrases")
    @classmethod
    def _non_empty_phrases(cls, v: list[str]) -> list[str]:
        phrases = [p for p in v if p.strip()]
        if not phrases:
            raise ValueError("monitor.filler_phrases must contain at least one phrase")
        return phrases

    @model_validator(mode="after")
    def _timeout_covers_one_poll(self) -> "MonitorConfig":
        if self.timeout_seconds < self.poll_interval_seconds:
            raise ValueError(
                "monitor.timeout_seconds must be >= monitor.poll_interval_seconds"
            )
        return self


class LLMConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 1024
    timeout_seconds: float = 30.0

    @field_validator("provider")
    @classmethod
    def _known_provider(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in _KNOWN_PROVIDERS:
            raise ValueError(
                f"llm.provider '{v}' is not supported. "
                f"Supported: {sorted(_KNOWN_PROVIDERS)}"
            )
        return v

    @field_validator("temperature")
    @classmethod
    def _valid_temperature(cls, v: float) -> float:
        if not (0.0 <= v <= 2.0):
            raise ValueError("llm.temperature must be between 0.0 and 2.0")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _positive_tokens(cls, v: int) -> int:
        if v < 1:
            raise ValueError("llm.max_tokens must be >= 1")
        return v


class TranslationConfig(BaseModel):
    enabled: bool = False
    user_language: str = "Korean"
    agent_language: str = "English"


class TelegramConfig(BaseModel):
    authorized_user_ids: list[int] = Field(default_factory=list)


class ScalingConfig(BaseModel):
    enabled: bool = False
    project_id: str = ""
    region: str = ""
    service_name: str = ""
    request_timeout_seconds: float = 20.0


class HealthConfig(BaseModel):
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        if not (0 < v < 65536):
            raise ValueError("health.port must be between 1 and 65535")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 100
    backup_count: int = 5
    console_output: bool = True
    json_format: Optional[bool] = None

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    JulesBridge runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    jules_api_key: Optional[str] = Field(default=None, alias="JULES_API_KEY")
    telegram_bot_token: Optional[str] = Field(default=None, alias="TELEGRAM_BOT_TOKEN")
    telegram_user_id: Optional[int] = Field(default=None, alias="TELEGRAM_USER_ID")
    openai_api_key: Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    gemini_api_key: Optional[str] = Field(default=None, alias="GEMINI_API_KEY")
    port: Optional[int] = Field(default=None, alias="PORT")

    # -- Structured config (from config.yaml) --------------------------------
    jules: JulesConfig = Field(default_factory=JulesConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    translation: TranslationConfig = Field(default_factory=TranslationConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("telegram_user_id", "port", mode="before")
    @classmethod
    def _coerce_optional_int(cls, v: Any) -> Optional[int]:
        if v in (None, "", "null"):
            return None
        return int(v)

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def health_port(self) -> int:
        """$PORT wins over health.port (Cloud Run injects PORT)."""
        return self.port or self.health.port

    @property
    def authorized_telegram_ids(self) -> list[int]:
        """Merge TELEGRAM_USER_ID env var with any IDs in config.yaml."""
        ids: list[int] = list(self.telegram.authorized_user_ids)
        if self.telegram_user_id and self.telegram_user_id not in ids:
            ids.append(self.telegram_user_id)
        return ids

    @property
    def llm_api_key(self) -> Optional[str]:
        return {
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }.get(self.llm.provider)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems (secret presence for the chosen
        provider, scaling coordinates) that Pydantic can't see.
        """
        errors: list[str] = []

        if not self.jules_api_key:
            errors.append("JULES_API_KEY must be set in your .env file.")

        if not self.telegram_bot_token:
            errors.append("TELEGRAM_BOT_TOKEN must be set in your .env file.")

        if not self.llm_api_key:
            env_name = f"{self.llm.provider.upper()}_API_KEY"
            errors.append(
                f"LLM provider '{self.llm.provider}' requires {env_name} to be "
                f"set in your .env file."
            )

        if self.scaling.enabled:
            for field_name in ("project_id", "region", "service_name"):
                if not getattr(self.scaling, field_name).strip():
                    errors.append(
                        f"scaling.{field_name} must be set when scaling.enabled is true."
                    )

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nJulesBridge startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()

_KNOWN_SECTIONS = {
    "jules", "monitor", "llm", "translation",
    "telegram", "scaling", "health", "logging",
}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. JULESBRIDGE_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("JULESBRIDGE_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default path on
    first use.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            _singleton = Settings(
                **{
                    k: v
                    for k, v in _load_yaml(_resolve_config_path(None)).items()
                    if k in _KNOWN_SECTIONS
                }
            )
        return _singleton
