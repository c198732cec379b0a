"""Typed notifications a worker invocation emits to its caller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Literal

NotificationKind = Literal[
    "progress",
    "reaction",
    "reply",
    "error",
    "cancelled",
    "rate_limited",
    "queued",
]

_NON_FINAL = {"progress", "reaction"}


@dataclass(slots=True, frozen=True)
class Notification:
    kind: NotificationKind
    content: str

    @property
    def final(self) -> bool:
        return self.kind not in _NON_FINAL


@dataclass(slots=True)
class Outcome:
    """Everything an invocation produced, split into progress and the final message."""

    progress: list[str]
    reactions: list[str]
    final: Notification | None

    def as_dict(self) -> dict[str, object]:
        return {
            "progress": list(self.progress),
            "reactions": list(self.reactions),
            "kind": self.final.kind if self.final else None,
            "reply": self.final.content if self.final else None,
        }


async def collect(stream: AsyncIterator[Notification]) -> Outcome:
    """Drain a notification stream."""

    outcome = Outcome(progress=[], reactions=[], final=None)
    async for notification in stream:
        if notification.kind == "progress":
            outcome.progress.append(notification.content)
        elif notification.kind == "reaction":
            outcome.reactions.append(notification.content)
        else:
            outcome.final = notification
    return outcome


__all__ = ["Notification", "NotificationKind", "Outcome", "collect"]
