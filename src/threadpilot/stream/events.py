"""Typed events produced from the CLI's stream-json output."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(slots=True)
class SessionStarted:
    session_id: str


@dataclass(slots=True)
class AssistantContent:
    items: list[dict[str, Any]]


@dataclass(slots=True)
class ToolResult:
    payload: list[dict[str, Any]]


@dataclass(slots=True)
class FinalResult:
    text: str
    session_id: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ErrorEvent:
    message: str


StreamEvent = Union[SessionStarted, AssistantContent, ToolResult, FinalResult, ErrorEvent]


__all__ = [
    "AssistantContent",
    "ErrorEvent",
    "FinalResult",
    "SessionStarted",
    "StreamEvent",
    "ToolResult",
]
