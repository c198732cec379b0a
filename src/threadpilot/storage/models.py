"""Persisted records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ThreadSession(BaseModel):
    """Binding of one chat channel to one worker."""

    channel_id: str
    repository_full_name: str | None = None
    repository_path: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)
    status: Literal["active", "archived"] = "active"


class QueuedMessage(BaseModel):
    """Inbound message deferred while the channel is rate limited."""

    message_id: str
    author_id: str
    content: str
    enqueued_at: datetime = Field(default_factory=utcnow)


class WorkerState(BaseModel):
    """Mutable per-channel execution state that must survive restarts."""

    worker_name: str
    channel_id: str
    repository_full_name: str | None = None
    repository_path: str | None = None
    session_id: str | None = Field(
        default=None, description="Session id reported by the CLI, used to resume the conversation."
    )
    plan_mode: bool = False
    use_devcontainer: bool = False
    profile_id: str | None = None
    phase: str = "idle"
    status: Literal["active", "archived"] = "active"
    rate_limit_timestamp: int | None = Field(
        default=None, description="Epoch seconds at which the rate limit was reported."
    )
    auto_resume_after_rate_limit: bool = False
    queued_messages: list[QueuedMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)
    revision: int = Field(default=0, description="Incremented on every save; used for compare-and-swap.")


class AuditEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    channel_id: str
    action: str
    details: dict[str, Any] = Field(default_factory=dict)


class TranscriptEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utcnow)
    channel_id: str
    session_id: str
    role: Literal["user", "progress", "assistant", "error"]
    content: str


__all__ = [
    "AuditEntry",
    "QueuedMessage",
    "ThreadSession",
    "TranscriptEntry",
    "WorkerState",
    "utcnow",
]
