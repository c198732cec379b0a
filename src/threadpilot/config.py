"""Configuration management for ThreadPilot."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os
import re

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_RATE_LIMIT_PATTERN = r"usage limit reached\|(?P<timestamp>\d+)"


class ThreadPilotSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    work_base_dir: Path = Field(default=Path("./work"), validation_alias="WORK_BASE_DIR")
    claude_path: str | None = Field(default=None, validation_alias="CLAUDE_PATH")
    devcontainer_path: str | None = Field(default=None, validation_alias="DEVCONTAINER_PATH")
    chroma_persist_path: Path | None = Field(default=None, validation_alias="CHROMA_PERSIST_PATH")
    log_level: str = Field(default="INFO", validation_alias="THREADPILOT_LOG_LEVEL")
    verbose: bool = Field(default=False, validation_alias="VERBOSE")
    rate_limit_delay_seconds: int = Field(default=300, validation_alias="RATE_LIMIT_DELAY_SECONDS")
    rate_limit_pattern: str = Field(
        default=DEFAULT_RATE_LIMIT_PATTERN, validation_alias="RATE_LIMIT_PATTERN"
    )
    resume_policy: str = Field(default="oldest", validation_alias="RESUME_POLICY")
    max_message_length: int = Field(default=2000, validation_alias="MAX_MESSAGE_LENGTH")
    truncate_length: int = Field(default=1900, validation_alias="TRUNCATE_LENGTH")
    append_system_prompt: str | None = Field(
        default=None, validation_alias="CLAUDE_APPEND_SYSTEM_PROMPT"
    )
    skip_permissions: bool = Field(default=True, validation_alias="CLAUDE_SKIP_PERMISSIONS")
    max_output_tokens: int = Field(default=25000, validation_alias="CLAUDE_CODE_MAX_OUTPUT_TOKENS")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="THREADPILOT_PROFILE_PATHS"
    )
    default_profile: str | None = Field(default=None, validation_alias="THREADPILOT_DEFAULT_PROFILE")
    claude_projects_dir: Path = Field(
        default=Path.home() / ".claude" / "projects", validation_alias="CLAUDE_PROJECTS_DIR"
    )
    compress_threshold: int = Field(default=180_000, validation_alias="CONTEXT_COMPRESS_THRESHOLD")
    compress_keep_recent: int = Field(default=10, validation_alias="CONTEXT_KEEP_RECENT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "THREADPILOT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("resume_policy")
    @classmethod
    def _normalize_resume_policy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"oldest", "drain"}:
            raise ValueError("RESUME_POLICY must be 'oldest' or 'drain'")
        return normalized

    @field_validator("rate_limit_pattern")
    @classmethod
    def _validate_rate_limit_pattern(cls, value: str) -> str:
        try:
            re.compile(value)
        except re.error as exc:
            raise ValueError(f"RATE_LIMIT_PATTERN is not a valid regular expression: {exc}") from exc
        return value

    @field_validator("rate_limit_delay_seconds")
    @classmethod
    def _validate_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("RATE_LIMIT_DELAY_SECONDS must be >= 0")
        return value

    @field_validator("compress_threshold", "compress_keep_recent")
    @classmethod
    def _validate_compression(cls, value: int) -> int:
        if value < 0:
            raise ValueError("CONTEXT_COMPRESS_THRESHOLD and CONTEXT_KEEP_RECENT must be >= 0")
        return value

    @field_validator("max_output_tokens")
    @classmethod
    def _validate_max_output_tokens(cls, value: int) -> int:
        if value < 1:
            raise ValueError("CLAUDE_CODE_MAX_OUTPUT_TOKENS must be >= 1")
        return value

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError(
            "THREADPILOT_PROFILE_PATHS must be a list of paths or a path-separated string"
        )

    @model_validator(mode="after")
    def _check_lengths(self) -> "ThreadPilotSettings":
        if self.truncate_length >= self.max_message_length:
            raise ValueError("TRUNCATE_LENGTH must be smaller than MAX_MESSAGE_LENGTH")
        return self

    @property
    def chroma_path(self) -> Path:
        """Location of the event log, defaulting to a folder under the work directory."""

        return self.chroma_persist_path or self.work_base_dir / "chroma"


@lru_cache(maxsize=1)
def get_settings() -> ThreadPilotSettings:
    """Return cached settings instance."""

    settings = ThreadPilotSettings()
    settings.work_base_dir = settings.work_base_dir.expanduser().resolve()
    if settings.chroma_persist_path is not None:
        settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["DEFAULT_RATE_LIMIT_PATTERN", "ThreadPilotSettings", "get_settings"]
