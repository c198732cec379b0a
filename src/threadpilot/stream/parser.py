"""Incremental parser for newline-delimited JSON emitted by the CLI."""

from __future__ import annotations

import json
import logging
from typing import Any

from .events import (
    AssistantContent,
    ErrorEvent,
    FinalResult,
    SessionStarted,
    StreamEvent,
    ToolResult,
)

logger = logging.getLogger(__name__)


def _content_items(record: dict[str, Any]) -> list[dict[str, Any]]:
    message = record.get("message")
    content = message.get("content") if isinstance(message, dict) else record.get("content")
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    if isinstance(content, list):
        return [item for item in content if isinstance(item, dict)]
    return []


def classify_record(record: Any) -> StreamEvent | None:
    """Map one decoded JSON record to a stream event, or ``None`` if it is not interesting."""

    if not isinstance(record, dict):
        return None

    record_type = record.get("type")

    if record_type == "session" or (record_type == "system" and record.get("subtype") == "init"):
        session_id = record.get("session_id")
        if isinstance(session_id, str) and session_id:
            return SessionStarted(session_id=session_id)
        return None

    if record_type == "assistant":
        items = _content_items(record)
        return AssistantContent(items=items) if items else None

    if record_type == "user":
        results = [item for item in _content_items(record) if item.get("type") == "tool_result"]
        return ToolResult(payload=results) if results else None

    if record_type == "result":
        subtype = str(record.get("subtype") or "")
        text = record.get("result")
        if record.get("is_error") or subtype.startswith("error"):
            return ErrorEvent(message=str(text or record.get("error") or subtype or "unknown error"))
        usage = record.get("usage")
        return FinalResult(
            text=text if isinstance(text, str) else "",
            session_id=record.get("session_id"),
            usage=usage if isinstance(usage, dict) else {},
        )

    if record_type == "error":
        error = record.get("error")
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return ErrorEvent(message=str(error or record.get("message") or "unknown error"))

    return None


class StreamParser:
    """Turn arbitrarily chunked stdout bytes into stream events.

    Only newline-terminated lines are decoded; the trailing partial line is
    carried over to the next ``feed`` call. Lines that are not valid JSON are
    skipped so one noisy line never stops the stream.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        return self._parse_lines(lines)

    def finish(self) -> list[StreamEvent]:
        """Parse whatever is left once the stream has ended."""

        remainder, self._buffer = self._buffer, b""
        return self._parse_lines([remainder])

    @property
    def pending(self) -> bytes:
        return self._buffer

    def _parse_lines(self, lines: list[bytes]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                self.skipped_lines += 1
                logger.debug("Skipping malformed stream line", extra={"line": line[:200]})
                continue
            event = classify_record(record)
            if event is not None:
                events.append(event)
        return events


__all__ = ["StreamParser", "classify_record"]
