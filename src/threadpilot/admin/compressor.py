"""Transcript compression for long sessions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from ..storage import TranscriptEntry

logger = logging.getLogger(__name__)

AUTO_COMPRESS_THRESHOLD = 180_000
KEEP_RECENT_ENTRIES = 10
CHARS_PER_TOKEN = 4

_SUMMARY_SAMPLES = 3
_TOOL_SAMPLES = 5


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters of whitespace-normalized text."""

    normalized = " ".join(text.split())
    return math.ceil(len(normalized) / CHARS_PER_TOKEN)


def estimate_transcript_tokens(entries: Iterable[TranscriptEntry]) -> int:
    return sum(estimate_tokens(entry.content) for entry in entries)


@dataclass(slots=True)
class CompressionResult:
    entries: list[TranscriptEntry]
    original_tokens: int
    compressed_tokens: int
    compressed: bool

    @property
    def ratio(self) -> float:
        if not self.original_tokens:
            return 1.0
        return self.compressed_tokens / self.original_tokens


class ContextCompressor:
    """Fold the older part of a transcript into one summary entry.

    The newest ``keep_recent`` entries are kept verbatim. Nothing changes
    while the transcript's estimated size stays at or below ``threshold``.
    """

    def __init__(self, *, threshold: int = AUTO_COMPRESS_THRESHOLD, keep_recent: int = KEEP_RECENT_ENTRIES) -> None:
        if threshold < 0:
            raise ValueError("threshold must be >= 0")
        if keep_recent < 0:
            raise ValueError("keep_recent must be >= 0")
        self.threshold = threshold
        self.keep_recent = keep_recent

    def should_compress(self, entries: Sequence[TranscriptEntry]) -> bool:
        return estimate_transcript_tokens(entries) > self.threshold

    def compress(self, entries: Sequence[TranscriptEntry]) -> CompressionResult:
        ordered = sorted(entries, key=lambda entry: entry.timestamp)
        original_tokens = estimate_transcript_tokens(ordered)
        split = len(ordered) - self.keep_recent
        if original_tokens <= self.threshold or split <= 0:
            return CompressionResult(ordered, original_tokens, original_tokens, compressed=False)

        older, recent = ordered[:split], ordered[split:]
        compacted = [self.summarize(older), *recent]
        compressed_tokens = estimate_transcript_tokens(compacted)
        logger.info(
            "Transcript compressed",
            extra={
                "channel_id": older[0].channel_id,
                "session_id": older[0].session_id,
                "entries": len(older),
                "original_tokens": original_tokens,
                "compressed_tokens": compressed_tokens,
            },
        )
        return CompressionResult(compacted, original_tokens, compressed_tokens, compressed=True)

    def summarize(self, older: Sequence[TranscriptEntry]) -> TranscriptEntry:
        requests = [entry.content for entry in older if entry.role == "user"]
        replies = [entry.content for entry in older if entry.role == "assistant"]
        # Progress lines are the rendered tool calls; keep only their headline.
        tools = [entry.content.splitlines()[0] for entry in older if entry.role == "progress" and entry.content.strip()]

        lines = [f"[Context compressed] Summary of {len(older)} earlier entries:"]
        if requests:
            lines.append("User requests: " + "; ".join(requests[:_SUMMARY_SAMPLES]))
        if replies:
            lines.append("Assistant replies: " + "; ".join(replies[:_SUMMARY_SAMPLES]))
        if tools:
            lines.append("Tools used: " + ", ".join(tools[:_TOOL_SAMPLES]))

        last = older[-1]
        return TranscriptEntry(
            timestamp=last.timestamp,
            channel_id=last.channel_id,
            session_id=last.session_id,
            role="assistant",
            content="\n".join(lines),
        )


__all__ = [
    "AUTO_COMPRESS_THRESHOLD",
    "KEEP_RECENT_ENTRIES",
    "CompressionResult",
    "ContextCompressor",
    "estimate_tokens",
    "estimate_transcript_tokens",
]
