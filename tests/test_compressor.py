from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from threadpilot.admin import ContextCompressor, estimate_tokens, estimate_transcript_tokens
from threadpilot.storage import TranscriptEntry

START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _entry(minute: int, role: str, content: str) -> TranscriptEntry:
    return TranscriptEntry(
        timestamp=START + timedelta(minutes=minute),
        channel_id="C1",
        session_id="sess-1",
        role=role,
        content=content,
    )


def test_estimate_tokens_normalizes_whitespace() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
    assert estimate_tokens("  ab \n\n  cd  ") == estimate_tokens("ab cd") == 2


def test_short_transcript_is_left_alone() -> None:
    entries = [_entry(1, "user", "hello"), _entry(2, "assistant", "hi there")]
    compressor = ContextCompressor(threshold=100, keep_recent=1)

    result = compressor.compress(entries)

    assert not compressor.should_compress(entries)
    assert result.compressed is False
    assert result.entries == entries
    assert result.ratio == 1.0


def test_long_transcript_keeps_recent_entries_and_summarizes_the_rest() -> None:
    entries = [
        _entry(4, "assistant", "Tests pass now"),
        _entry(1, "user", "Fix the failing test " + "x" * 40),
        _entry(2, "progress", "⚡ **Bash**: pytest\nmore output"),
        _entry(3, "assistant", "Found the bug"),
        _entry(5, "user", "Thanks"),
        _entry(6, "assistant", "You're welcome"),
    ]
    compressor = ContextCompressor(threshold=10, keep_recent=2)

    result = compressor.compress(entries)

    assert compressor.should_compress(entries)
    assert result.compressed is True
    assert [entry.content for entry in result.entries[1:]] == ["Thanks", "You're welcome"]
    summary = result.entries[0]
    assert summary.role == "assistant"
    assert summary.timestamp == START + timedelta(minutes=4)
    assert summary.content.splitlines() == [
        "[Context compressed] Summary of 4 earlier entries:",
        "User requests: Fix the failing test " + "x" * 40,
        "Assistant replies: Found the bug; Tests pass now",
        "Tools used: ⚡ **Bash**: pytest",
    ]
    assert result.original_tokens == estimate_transcript_tokens(entries)
    assert result.compressed_tokens == estimate_transcript_tokens(result.entries)


def test_nothing_to_fold_when_everything_is_recent() -> None:
    entries = [_entry(1, "user", "x" * 400)]

    result = ContextCompressor(threshold=10, keep_recent=5).compress(entries)

    assert result.compressed is False
    assert result.entries == entries


def test_negative_settings_are_rejected() -> None:
    with pytest.raises(ValueError):
        ContextCompressor(threshold=-1)
    with pytest.raises(ValueError):
        ContextCompressor(keep_recent=-1)
