"""Outbound chat transport used for messages the engine sends on its own."""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from .storage.models import utcnow

logger = logging.getLogger(__name__)


class ChatTransport(Protocol):
    async def post_message(self, channel_id: str, content: str) -> None:
        ...


@dataclass(slots=True)
class PostedMessage:
    channel_id: str
    content: str
    posted_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> dict[str, str]:
        return {"channel_id": self.channel_id, "content": self.content, "posted_at": self.posted_at.isoformat()}


class OutboxTransport:
    """Keeps posted messages per channel until a client drains them."""

    def __init__(self) -> None:
        self._outbox: dict[str, list[PostedMessage]] = defaultdict(list)

    async def post_message(self, channel_id: str, content: str) -> None:
        self._outbox[channel_id].append(PostedMessage(channel_id=channel_id, content=content))
        logger.debug("Message posted to outbox", extra={"channel_id": channel_id, "length": len(content)})

    def pending(self, channel_id: str) -> int:
        return len(self._outbox.get(channel_id, []))

    def drain(self, channel_id: str) -> list[PostedMessage]:
        return self._outbox.pop(channel_id, [])


__all__ = ["ChatTransport", "OutboxTransport", "PostedMessage"]
