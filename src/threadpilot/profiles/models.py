"""Worker profile models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


class WorkerProfile(BaseModel):
    """Preset of CLI options a thread can opt into."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(..., description="Display title for the profile.")
    description: str = Field(default="", description="What the profile is meant for.")
    append_system_prompt: str | None = Field(
        default=None,
        description="Extra system prompt appended to every invocation.",
    )
    skip_permissions: bool | None = Field(
        default=None,
        description="Override for --dangerously-skip-permissions; None keeps the global setting.",
    )
    max_output_tokens: int | None = Field(
        default=None,
        description="Override for CLAUDE_CODE_MAX_OUTPUT_TOKENS.",
    )
    model: str | None = Field(default=None, description="Model passed with --model.")
    extra_args: list[str] = Field(
        default_factory=list,
        description="Additional CLI arguments appended verbatim.",
    )

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker profile id must not be empty")
        return normalized

    @field_validator("max_output_tokens")
    @classmethod
    def _validate_tokens(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("max_output_tokens must be >= 1")
        return value

    @field_validator("extra_args", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("extra_args must be a sequence of strings")


__all__ = ["WorkerProfile"]
