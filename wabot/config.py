"""Configuration schema and loading."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogConfig(BaseModel):
    level: str = "INFO"
    format: str = ""         # empty = built-in console/file formats
    json_format: bool = False
    file: str = ""           # empty = no file output
    rotation: str = "10 MB"  # loguru rotation param
    retention: str = "7 days"


class EventLogConfig(BaseModel):
    enabled: bool = False
    file: str = ""  # empty = <root_dir>/events.jsonl


class RateLimitConfig(BaseModel):
    """Sliding window limit: `requests` per `window_seconds`."""
    requests: int = 100
    window_seconds: float = 900.0
    enabled: bool = True


class SenderRateLimitConfig(BaseModel):
    """Per-sender command limit applied by the message handler."""
    requests: int = 10
    window_seconds: float = 60.0
    enabled: bool = True


class HealthConfig(BaseModel):
    """Sampling intervals in seconds."""
    memory_interval: float = 20 * 60
    connection_interval: float = 30 * 60
    store_interval: float = 20 * 60
    plugin_interval: float = 15 * 60


class BotConfig(BaseSettings):
    # Identity
    bot_name: str = "WhatsApp Bot"
    owner_id: str = ""
    owner_name: str = "Bot Owner"
    admin_numbers: str = ""  # comma separated
    mode: str = "public"
    prefix: str = "."
    timezone: str = "Africa/Lagos"

    # Session bootstrap
    session_seed: str = ""
    session_seed_url: str = ""

    # Feature flags
    auto_read: bool = False
    auto_react: bool = False
    welcome: bool = False
    antilink: bool = False
    reject_call: bool = False
    auto_bio: bool = False
    auto_status_seen: bool = False

    # Admin HTTP surface
    host: str = "0.0.0.0"
    port: int = 3000
    admin_token: str = ""
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)

    # Store
    store_uri: str = "file://data"
    database_name: str = "whatsapp_bot"

    # Layout
    root_dir: str = "."
    session_dir: str = ""   # empty = <root_dir>/sessions
    plugins_dir: str = ""   # empty = <root_dir>/plugins

    # Gateway
    gateway_factory: str = ""  # "module:callable"
    max_retries: int = 8
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    conflict_delay: float = 8.0
    stream_error_wipe_after: int = 3

    # Plugins and tasks
    plugin_execution_timeout: float = 30.0
    task_timeout: float = 300.0
    crash_threshold: int = 3
    task_failure_threshold: int = 5
    command_queue_warn_depth: int = 0
    sender_rate_limit: SenderRateLimitConfig = Field(default_factory=SenderRateLimitConfig)

    # Health
    high_memory_mb: int = 400
    critical_memory_mb: int = 600
    health: HealthConfig = Field(default_factory=HealthConfig)

    log: LogConfig = Field(default_factory=LogConfig)
    event_log: EventLogConfig = Field(default_factory=EventLogConfig)
    shutdown_grace: float = 10.0

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings):
        # env > dotenv > file (init) > defaults -- environment variables always win
        return (env_settings, dotenv_settings, init_settings, file_secret_settings)

    @property
    def root_path(self) -> Path:
        return Path(self.root_dir).expanduser()

    @property
    def session_path(self) -> Path:
        return Path(self.session_dir).expanduser() if self.session_dir else self.root_path / "sessions"

    @property
    def plugins_path(self) -> Path:
        return Path(self.plugins_dir).expanduser() if self.plugins_dir else self.root_path / "plugins"

    @property
    def owner_jid(self) -> str:
        from wabot.helpers import to_jid

        return to_jid(self.owner_id) if self.owner_id else ""

    @property
    def admin_jids(self) -> list[str]:
        from wabot.helpers import to_jid

        return [to_jid(n) for n in self.admin_numbers.split(",") if n.strip()]

    def features(self) -> dict[str, bool]:
        return {
            "auto_read": self.auto_read,
            "auto_react": self.auto_react,
            "welcome": self.welcome,
            "antilink": self.antilink,
            "reject_call": self.reject_call,
            "auto_bio": self.auto_bio,
            "auto_status_seen": self.auto_status_seen,
        }


def _camel_to_snake(name: str) -> str:
    s = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    s = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s)
    return s.lower()


def _convert_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {_camel_to_snake(k): _convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_convert_keys(i) for i in data]
    return data


def load_config(config_path: str | None = None) -> BotConfig:
    """Load config from an optional JSON file + .env + environment variables."""
    file_data: dict[str, Any] = {}
    if config_path:
        path = Path(config_path).expanduser()
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                file_data = _convert_keys(raw)
            except (json.JSONDecodeError, ValueError):
                pass

    # Pass file data as kwargs so BaseSettings still applies env var overrides
    return BotConfig(**file_data)


_STORE_SCHEMES = ("file://", "memory://")
_VALID_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def validate_startup(config: BotConfig, require_gateway_factory: bool = True) -> None:
    """Validate config for production startup. Raises ValueError with all errors.

    Kept apart from the pydantic model so tests can build a BotConfig()
    without an owner or gateway factory.
    """
    errors: list[str] = []

    if not config.owner_id:
        errors.append("OWNER_ID is required")
    if config.mode not in ("public", "private"):
        errors.append(f"MODE '{config.mode}' invalid, must be 'public' or 'private'")
    try:
        ZoneInfo(config.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        errors.append(f"TIMEZONE '{config.timezone}' is not a known IANA zone")
    if require_gateway_factory and (not config.gateway_factory or ":" not in config.gateway_factory):
        errors.append("GATEWAY_FACTORY must be set as 'module:callable'")
    if not config.store_uri.startswith(_STORE_SCHEMES):
        errors.append(f"STORE_URI '{config.store_uri}' unsupported, use one of {_STORE_SCHEMES}")
    if not config.prefix:
        errors.append("PREFIX must not be empty")

    for name in ("crash_threshold", "task_failure_threshold", "max_retries"):
        if getattr(config, name) < 1:
            errors.append(f"{name} must be >= 1")

    if config.log.level.upper() not in _VALID_LEVELS:
        errors.append(f"log.level '{config.log.level}' invalid, must be one of {_VALID_LEVELS}")

    if errors:
        raise ValueError(
            "Bot configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
        )
