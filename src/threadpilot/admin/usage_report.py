"""Usage reports built from the Claude CLI's own JSON-lines session logs."""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_PROJECTS_DIR = Path.home() / ".claude" / "projects"
TOP_GROUPS = 10


class TokenTotals(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def total(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )

    def add(self, usage: dict[str, Any]) -> None:
        for name in type(self).model_fields:
            value = usage.get(name) or 0
            if isinstance(value, (int, float)):
                setattr(self, name, getattr(self, name) + int(value))

    @classmethod
    def combine(cls, totals: Iterable["TokenTotals"]) -> "TokenTotals":
        combined = cls()
        for item in totals:
            combined.add(item.model_dump())
        return combined


class SessionStats(BaseModel):
    session_id: str
    start_time: str | None = None
    end_time: str | None = None
    user_messages: int = 0
    assistant_messages: int = 0
    tokens: TokenTotals = Field(default_factory=TokenTotals)
    project: str
    git_branch: str | None = None
    version: str | None = None

    @property
    def total_messages(self) -> int:
        return self.user_messages + self.assistant_messages

    @property
    def date(self) -> str:
        return self.start_time.split("T")[0] if self.start_time else "unknown"


class DailyStats(BaseModel):
    date: str
    total_sessions: int
    total_messages: int
    tokens: TokenTotals
    sessions: list[SessionStats]


class GroupStats(BaseModel):
    name: str
    sessions: int
    tokens: TokenTotals


class UsageReport(BaseModel):
    generated: datetime
    days: int
    total_sessions: int
    total_messages: int
    tokens: TokenTotals
    daily: list[DailyStats]
    top_projects: list[GroupStats]
    top_branches: list[GroupStats]


def project_name(cwd: str) -> str:
    """Derive a readable project name from a session's working directory.

    ``.../repositories/<owner>/<repo>/...`` becomes ``owner/repo``, and
    ``.../worktrees/<name>/...`` becomes ``worktree-<name>``.
    """

    parts = [part for part in cwd.split("/") if part]
    if "repositories" in parts:
        index = parts.index("repositories")
        if index + 2 < len(parts):
            return f"{parts[index + 1]}/{parts[index + 2]}"
    if "worktrees" in parts:
        index = parts.index("worktrees")
        if index + 1 < len(parts):
            return f"worktree-{parts[index + 1]}"
    return parts[-1] if parts else "unknown"


def analyze_session_file(path: Path, project_dir: str) -> SessionStats | None:
    """Summarize one session log. Lines that are not JSON objects are skipped."""

    try:
        lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    except OSError as exc:
        logger.warning("Failed to read session log", extra={"path": str(path), "error": str(exc)})
        return None
    if not lines:
        return None

    stats = SessionStats(session_id=path.stem, project="")
    for line in lines:
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue

        timestamp = entry.get("timestamp")
        if isinstance(timestamp, str):
            stats.start_time = stats.start_time or timestamp
            stats.end_time = timestamp
        if isinstance(entry.get("cwd"), str) and not stats.project:
            stats.project = project_name(entry["cwd"])
        if entry.get("gitBranch") and not stats.git_branch:
            stats.git_branch = str(entry["gitBranch"])
        if entry.get("version") and not stats.version:
            stats.version = str(entry["version"])

        if entry.get("type") == "user":
            stats.user_messages += 1
        elif entry.get("type") == "assistant":
            stats.assistant_messages += 1
            message = entry.get("message")
            if isinstance(message, dict) and isinstance(message.get("usage"), dict):
                stats.tokens.add(message["usage"])

    stats.project = stats.project or project_dir
    return stats


def _top(groups: dict[str, list[SessionStats]]) -> list[GroupStats]:
    ranked = [
        GroupStats(
            name=name,
            sessions=len(sessions),
            tokens=TokenTotals.combine(session.tokens for session in sessions),
        )
        for name, sessions in groups.items()
    ]
    ranked.sort(key=lambda group: group.tokens.total, reverse=True)
    return ranked[:TOP_GROUPS]


class UsageAnalyzer:
    """Aggregate CLI session logs into daily, per-project and per-branch usage."""

    def __init__(self, projects_dir: Path | None = None, *, clock: Callable[[], float] | None = None) -> None:
        self.projects_dir = Path(projects_dir) if projects_dir is not None else DEFAULT_PROJECTS_DIR
        self._clock = clock or time.time

    def analyze_sessions(self, days: int) -> list[SessionStats]:
        """Sessions whose log was modified within the last ``days`` days, oldest first."""

        if not self.projects_dir.is_dir():
            logger.warning("Claude projects directory not found", extra={"path": str(self.projects_dir)})
            return []

        cutoff = self._clock() - days * 86400
        sessions: list[SessionStats] = []
        for project in sorted(self.projects_dir.iterdir()):
            if not project.is_dir():
                continue
            for path in sorted(project.glob("*.jsonl")):
                try:
                    if path.stat().st_mtime < cutoff:
                        continue
                except OSError:
                    continue
                stats = analyze_session_file(path, project.name)
                if stats is not None:
                    sessions.append(stats)
        sessions.sort(key=lambda session: session.start_time or "")
        return sessions

    def generate_report(self, days: int = 30) -> UsageReport:
        sessions = self.analyze_sessions(days)

        by_date: dict[str, list[SessionStats]] = defaultdict(list)
        by_project: dict[str, list[SessionStats]] = defaultdict(list)
        by_branch: dict[str, list[SessionStats]] = defaultdict(list)
        for session in sessions:
            by_date[session.date].append(session)
            by_project[session.project or "unknown"].append(session)
            by_branch[session.git_branch or "unknown"].append(session)

        daily = [
            DailyStats(
                date=date,
                total_sessions=len(items),
                total_messages=sum(item.total_messages for item in items),
                tokens=TokenTotals.combine(item.tokens for item in items),
                sessions=items,
            )
            for date, items in sorted(by_date.items())
        ]
        return UsageReport(
            generated=datetime.fromtimestamp(self._clock(), tz=timezone.utc),
            days=days,
            total_sessions=len(sessions),
            total_messages=sum(session.total_messages for session in sessions),
            tokens=TokenTotals.combine(session.tokens for session in sessions),
            daily=daily,
            top_projects=_top(by_project),
            top_branches=_top(by_branch),
        )

    def json_report(self, days: int = 30) -> str:
        return self.generate_report(days).model_dump_json(indent=2)

    def summary(self, days: int = 30) -> str:
        report = self.generate_report(days)
        tokens = report.tokens
        return "\n".join(
            [
                f"Claude usage summary (last {days} days)",
                f"Generated: {report.generated.strftime('%Y-%m-%d %H:%M UTC')}",
                "",
                f"Total sessions: {report.total_sessions}",
                f"Total messages: {report.total_messages}",
                f"Total tokens: {tokens.total:,}",
                f"  - Input: {tokens.input_tokens:,}",
                f"  - Output: {tokens.output_tokens:,}",
                f"  - Cache creation: {tokens.cache_creation_input_tokens:,}",
                f"  - Cache read: {tokens.cache_read_input_tokens:,}",
                "",
                f"Daily average: {round(tokens.total / days):,} tokens/day",
                f"Top project: {report.top_projects[0].name if report.top_projects else 'N/A'}",
                f"Top branch: {report.top_branches[0].name if report.top_branches else 'N/A'}",
            ]
        )


__all__ = [
    "DailyStats",
    "GroupStats",
    "SessionStats",
    "TokenTotals",
    "UsageAnalyzer",
    "UsageReport",
    "analyze_session_file",
    "project_name",
]
