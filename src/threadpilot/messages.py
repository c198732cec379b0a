"""User-facing message texts.

All replies that reach a chat channel are built here so they stay short and
never leak internals such as tracebacks.
"""

from __future__ import annotations

from datetime import datetime, timezone

THINKING = "🤖 Thinking..."
NO_SESSION = "No session is active in this channel. Start one with /start <owner/repo>."
ALREADY_ACTIVE = "A session is already active in this channel. Close it before starting another."
BUSY = "Still working on the previous request. Use /stop to cancel it."
NO_REPOSITORY = "This session has no repository yet. Start it again with /start <owner/repo>."
NOTHING_TO_CANCEL = "Nothing is running right now."
CANCEL_REQUESTED = "⛔ Execution stopped."
CANCELLED = "⛔ Execution was cancelled."
SPAWN_FAILED = "Could not start the assistant. Check that the CLI is installed and try again."
STREAM_FAILED = "The assistant stopped unexpectedly. Please send your message again."
EMPTY_REPLY = "The assistant finished without a reply."
THREAD_CLOSED = "Session closed. History has been kept."
UNKNOWN_SETTING = "Unknown setting. Available: plan, devcontainer, auto-resume, profile."
INVALID_TOGGLE = "Use 'on' or 'off'."
UNKNOWN_PROFILE = "Unknown profile '{profile_id}'."
RATE_LIMIT_INFO_MISSING = "No rate limit is active for this channel."
MANUAL_RESUME = "Manual resume selected. Send your message again once the limit is lifted."
QUEUE_FAILED = "⏳ Rate limited, and your message could not be queued. Please send it again once the limit is lifted."


def format_resume_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def rate_limited(resume_at: datetime) -> str:
    return (
        "The assistant hit its usage limit and is paused.\n\n"
        f"Expected to resume around {format_resume_time(resume_at)}.\n\n"
        "Messages sent until then are queued and processed automatically afterwards."
    )


def queued(resume_at: datetime | None, position: int) -> str:
    when = format_resume_time(resume_at) if resume_at else "the limit is lifted"
    return f"⏳ Rate limited. Your message is queued (position {position}) and will run after {when}."


def auto_resume_enabled(resume_at: datetime) -> str:
    return f"Auto-resume enabled. Queued messages will be processed around {format_resume_time(resume_at)}."


def command_failed(code: int, stderr: str) -> str:
    detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
    return f"The assistant exited with code {code}: {detail}"


def setting_changed(setting: str, enabled: bool) -> str:
    return f"{setting} is now {'on' if enabled else 'off'}."
