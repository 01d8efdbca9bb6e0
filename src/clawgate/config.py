"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (Slack tokens) live in .env.
Environment variables override both using ``__`` as the nested delimiter
(e.g. ``SLACK__BOT_TOKEN``). Secrets use SecretStr for masking in logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from clawgate.config import get_settings

    s = get_settings()
    print(s.agent.name)
    print(s.router.main_group_folder)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, SecretStr, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "Andy"


class RouterConfig(_StrictModel):
    main_group_folder: str = "main"  # the privileged group
    batch_size: int = 100  # max messages fetched per delivery cycle

    @field_validator("batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        return max(1, v)


class ContainerConfig(_StrictModel):
    image: str = "clawgate-agent:latest"
    runtime: str = "docker"
    timeout: float = 300.0  # seconds


class IntervalsConfig(_StrictModel):
    message_poll: float = 2.0  # seconds
    ipc_poll: float = 1.0  # seconds
    approval_scan: float = 30.0  # seconds


class SchedulerConfig(_StrictModel):
    poll_interval: float = 60.0  # seconds
    missing_group_retry: float = 600.0  # seconds before retrying a task whose group is gone
    timezone: str = ""  # empty → auto-detect


class EmailConfig(_StrictModel):
    enabled: bool = False
    trigger_mode: Literal["label", "address", "subject"] = "label"
    trigger_value: str = "claude"
    context_mode: Literal["thread", "sender", "single"] = "thread"
    reply_prefix: str = ""
    poll_interval: float = 60.0  # seconds
    max_results: int = 25
    mcp_command: str = "npx"
    mcp_args: list[str] = ["-y", "@gongrzhe/server-gmail-autoauth-mcp"]
    mcp_timeout: float = 20.0  # seconds per tool call

    @model_validator(mode="after")
    def _require_trigger_value(self) -> EmailConfig:
        if self.enabled and not self.trigger_value.strip():
            raise ValueError("email.trigger_value must be set when email is enabled")
        return self


class SlackConfig(_StrictModel):
    bot_token: SecretStr | None = None  # xoxb-... Bot User OAuth Token
    app_token: SecretStr | None = None  # xapp-... App-Level Token (Socket Mode)


class WhatsAppConfig(_StrictModel):
    enabled: bool = True


class HostChangesConfig(_StrictModel):
    apply_command: list[str] = ["claude", "--print"]
    timeout: float = 300.0  # seconds

    @field_validator("apply_command")
    @classmethod
    def validate_apply_command(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("host_changes.apply_command cannot be empty")
        return v


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class PluginConfig(_StrictModel):
    enabled: bool = True


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    router: RouterConfig = RouterConfig()
    container: ContainerConfig = ContainerConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    email: EmailConfig = EmailConfig()
    slack: SlackConfig = SlackConfig()
    whatsapp: WhatsAppConfig = WhatsAppConfig()
    host_changes: HostChangesConfig = HostChangesConfig()
    logging: LoggingConfig = LoggingConfig()
    plugins: dict[str, PluginConfig] = {}

    # Sentinels (class-level, not fields)
    OUTPUT_START_MARKER: ClassVar[str] = "---CLAWGATE_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---CLAWGATE_OUTPUT_END---"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def timezone(self) -> str:
        if self.scheduler.timezone:
            return self.scheduler.timezone
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def store_dir(self) -> Path:
        return (self.project_root / "store").resolve()

    @cached_property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    def plugin_enabled(self, name: str) -> bool:
        cfg = self.plugins.get(name)
        return cfg is None or cfg.enabled


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink, fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
