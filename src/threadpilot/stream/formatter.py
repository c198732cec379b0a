"""Render stream events into chat-sized text."""

from __future__ import annotations

import json
import re
from typing import Any

SHORT_RESULT_THRESHOLD = 500
LONG_RESULT_THRESHOLD = 2000
TRUNCATION_MARKER = "\n\n... (truncated)"

_ANSI_ESCAPE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*[@-~]|\][^\x07\x1b]*(?:\x07|\x1b\\)|[@-Z\\-_])")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_IMPORTANT_LINE = re.compile(
    r"\b(error|fatal|exception|traceback|panic|failed|failure)\b", re.IGNORECASE
)

TOOL_ICONS = {
    "Bash": "⚡",
    "Read": "📖",
    "Write": "✏️",
    "Edit": "🔧",
    "MultiEdit": "🔧",
    "NotebookEdit": "📓",
    "Glob": "🔍",
    "Grep": "🔍",
    "LS": "📁",
    "WebFetch": "🌐",
    "WebSearch": "🌐",
    "Task": "🤖",
    "TodoWrite": "📝",
    "ExitPlanMode": "📋",
}
DEFAULT_TOOL_ICON = "🛠️"

_TODO_MARKS = {"completed": "✅", "in_progress": "🔄", "pending": "⬜"}


def strip_control_sequences(text: str) -> str:
    """Remove ANSI escapes and non-printable control characters, keeping newlines and tabs."""

    return _CONTROL_CHARS.sub("", _ANSI_ESCAPE.sub("", text))


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False)


class MessageFormatter:
    """Formatting policy for progress and final messages."""

    def __init__(self, *, max_length: int = 2000, truncate_length: int = 1900) -> None:
        self.max_length = max_length
        self.truncate_length = truncate_length

    def finalize(self, text: str) -> str:
        """Sanitize and enforce the transport's length ceiling."""

        cleaned = strip_control_sequences(text).strip()
        if len(cleaned) <= self.max_length:
            return cleaned
        return cleaned[: self.truncate_length] + TRUNCATION_MARKER

    def format_content_items(self, items: list[dict[str, Any]]) -> list[str]:
        rendered: list[str] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type == "text":
                text = str(item.get("text", "")).strip()
            elif item_type == "tool_use":
                text = self.format_tool_use(str(item.get("name", "tool")), item.get("input") or {})
            elif item_type == "tool_result":
                text = self.format_tool_result(item.get("content"), is_error=bool(item.get("is_error")))
            else:
                continue
            if text:
                rendered.append(self.finalize(text))
        return rendered

    def format_tool_use(self, name: str, tool_input: Any) -> str:
        icon = TOOL_ICONS.get(name, DEFAULT_TOOL_ICON)
        if not isinstance(tool_input, dict):
            tool_input = {}
        if name == "TodoWrite":
            todos = tool_input.get("todos")
            if isinstance(todos, list):
                return f"{icon} **TodoWrite**\n" + self.format_todo_list(todos)
        detail = ""
        if name == "Bash":
            detail = str(tool_input.get("description") or tool_input.get("command") or "")
        elif name in {"Read", "Write", "Edit", "MultiEdit", "NotebookEdit"}:
            detail = str(tool_input.get("file_path") or tool_input.get("notebook_path") or "")
        elif name in {"Glob", "Grep"}:
            detail = str(tool_input.get("pattern") or "")
        elif name == "LS":
            detail = str(tool_input.get("path") or "")
        elif name == "WebFetch":
            detail = str(tool_input.get("url") or "")
        elif name == "WebSearch":
            detail = str(tool_input.get("query") or "")
        elif name == "Task":
            detail = str(tool_input.get("description") or "")
        detail = detail.strip().splitlines()[0] if detail.strip() else ""
        return f"{icon} **{name}**: {detail}" if detail else f"{icon} **{name}**"

    def format_todo_list(self, todos: list[Any]) -> str:
        lines = []
        for todo in todos:
            if not isinstance(todo, dict):
                continue
            mark = _TODO_MARKS.get(str(todo.get("status")), _TODO_MARKS["pending"])
            lines.append(f"{mark} {todo.get('content', '')}")
        return "\n".join(lines)

    def format_tool_result(self, content: Any, *, is_error: bool = False) -> str:
        text = strip_control_sequences(_result_text(content)).strip()
        if not text:
            return ""
        prefix = "❌ " if is_error else "✅ "
        if len(text) < SHORT_RESULT_THRESHOLD:
            body = text
        elif len(text) <= LONG_RESULT_THRESHOLD:
            body = self._head_and_tail(text)
        else:
            body = self._summarize(text)
        return f"{prefix}```\n{body}\n```"

    @staticmethod
    def _head_and_tail(text: str) -> str:
        lines = text.splitlines()
        if len(lines) > 15:
            omitted = len(lines) - 15
            return "\n".join(lines[:10] + [f"... ({omitted} lines omitted) ..."] + lines[-5:])
        return f"{text[:300]}\n... ({len(text) - 500} chars omitted) ...\n{text[-200:]}"

    @staticmethod
    def _summarize(text: str) -> str:
        lines = text.splitlines()
        head = lines[:5]
        tail = lines[-5:] if len(lines) > 10 else []
        edge = set(head) | set(tail)
        important: list[str] = []
        for line in lines[5 : len(lines) - len(tail)]:
            if line in edge or line in important:
                continue
            if _IMPORTANT_LINE.search(line):
                important.append(line[:200])
            if len(important) >= 10:
                break

        parts = [line[:200] for line in head]
        if important:
            parts.append("... key lines ...")
            parts.extend(important)
        if tail:
            parts.append("...")
            parts.extend(line[:200] for line in tail)
        parts.append(f"({len(lines)} lines, {len(text)} chars total)")
        return "\n".join(parts)


__all__ = [
    "LONG_RESULT_THRESHOLD",
    "MessageFormatter",
    "SHORT_RESULT_THRESHOLD",
    "TOOL_ICONS",
    "TRUNCATION_MARKER",
    "strip_control_sequences",
]
