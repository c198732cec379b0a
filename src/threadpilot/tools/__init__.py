"""Tool registration for ThreadPilot."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from .. import messages
from ..admin import RateLimitCoordinator, SessionRegistry
from ..config import ThreadPilotSettings
from ..errors import ThreadPilotError, WorkerAlreadyExistsError, WorkerBusyError, WorkerNotFoundError
from ..profiles import ProfileLoader, ProfileLoadError
from ..transport import OutboxTransport
from ..worker import collect

logger = logging.getLogger(__name__)

_TOGGLES = {"on": True, "off": False, "true": True, "false": False, "1": True, "0": False}


@dataclass(slots=True)
class ToolHandles:
    start_thread: Any
    send_message: Any
    stop_execution: Any
    close_thread: Any
    configure_thread: Any
    fetch_messages: Any
    list_profiles: Any


def _reply(ok: bool, message: str, **extra: Any) -> dict[str, Any]:
    return {"ok": ok, "message": message, **extra}


def _failure(exc: ThreadPilotError, message: str) -> dict[str, Any]:
    return _reply(False, message, kind=exc.kind)


def register_tools(
    server: FastMCP,
    *,
    registry: SessionRegistry,
    coordinator: RateLimitCoordinator,
    profiles: ProfileLoader,
    settings: ThreadPilotSettings,
    transport: OutboxTransport,
) -> ToolHandles:
    """Register ThreadPilot's MCP tools on the server."""

    def _start_thread(
        channel_id: str,
        repository: str,
        repository_path: str,
        profile_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Open a session for a channel, bound to a checked-out repository."""

        path = Path(repository_path).expanduser()
        if not path.is_absolute():
            path = settings.work_base_dir / path
        try:
            worker = registry.start_thread(channel_id, repository, str(path), profile_id=profile_id)
        except WorkerAlreadyExistsError as exc:
            _emit_log(context, "info", "Thread already active", extra={"channel_id": channel_id})
            return _failure(exc, messages.ALREADY_ACTIVE)
        except ProfileLoadError as exc:
            _emit_log(context, "warning", "Unknown profile", extra={"profile_id": profile_id, "error": str(exc)})
            return _reply(False, messages.UNKNOWN_PROFILE.format(profile_id=profile_id), kind="not_found")

        _emit_log(
            context,
            "info",
            "Thread started",
            extra={"channel_id": channel_id, "worker": worker.name, "repository": repository},
        )
        return _reply(True, f"Session started for {repository}.", worker=worker.name)

    async def _send_message(
        channel_id: str,
        text: str,
        message_id: str | None = None,
        author_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Route a chat message and return the progress and final reply it produced."""

        try:
            outcome = await collect(
                registry.route_message(channel_id, text, message_id=message_id, author_id=author_id)
            )
        except WorkerNotFoundError as exc:
            return _failure(exc, messages.NO_SESSION)
        except WorkerBusyError as exc:
            _emit_log(context, "info", "Worker busy", extra={"channel_id": channel_id, "phase": exc.phase})
            return _failure(exc, messages.BUSY)

        payload = outcome.as_dict()
        _emit_log(
            context,
            "debug",
            "Message routed",
            extra={"channel_id": channel_id, "kind": payload["kind"], "progress": len(outcome.progress)},
        )
        return _reply(payload["kind"] in {"reply", "queued", "rate_limited"}, payload["reply"] or "", **payload)

    def _stop_execution(channel_id: str, context: Context | None = None) -> dict[str, Any]:
        """Cancel the running invocation for a channel, if any."""

        try:
            stopped = registry.stop_execution(channel_id)
        except WorkerNotFoundError as exc:
            return _failure(exc, messages.NO_SESSION)
        _emit_log(context, "info", "Stop requested", extra={"channel_id": channel_id, "stopped": stopped})
        return _reply(stopped, messages.CANCEL_REQUESTED if stopped else messages.NOTHING_TO_CANCEL)

    def _close_thread(channel_id: str, context: Context | None = None) -> dict[str, Any]:
        """Archive the channel's session; safe to call repeatedly."""

        found = registry.terminate_thread(channel_id)
        _emit_log(context, "info", "Thread closed", extra={"channel_id": channel_id, "found": found})
        return _reply(True, messages.THREAD_CLOSED, found=found)

    async def _configure_thread(
        channel_id: str,
        setting: str,
        value: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Change a per-thread setting: plan, devcontainer, auto-resume or profile."""

        setting = setting.strip().lower()
        value = value.strip()
        try:
            registry.get_worker(channel_id)
        except WorkerNotFoundError as exc:
            return _failure(exc, messages.NO_SESSION)

        if setting == "profile":
            profile_id = None if value.lower() in {"", "none", "default"} else value
            try:
                registry.set_profile(channel_id, profile_id)
            except ProfileLoadError:
                return _reply(False, messages.UNKNOWN_PROFILE.format(profile_id=value), kind="not_found")
            _emit_log(context, "info", "Profile changed", extra={"channel_id": channel_id, "profile_id": profile_id})
            return _reply(True, f"profile is now {profile_id or 'default'}.")

        if setting not in {"plan", "devcontainer", "auto-resume"}:
            return _reply(False, messages.UNKNOWN_SETTING, kind="invalid")
        enabled = _TOGGLES.get(value.lower())
        if enabled is None:
            return _reply(False, messages.INVALID_TOGGLE, kind="invalid")

        if setting == "plan":
            registry.set_plan_mode(channel_id, enabled)
            message = messages.setting_changed(setting, enabled)
        elif setting == "devcontainer":
            registry.set_devcontainer(channel_id, enabled)
            message = messages.setting_changed(setting, enabled)
        else:
            message = await coordinator.set_auto_resume(channel_id, enabled)
            if message == messages.RATE_LIMIT_INFO_MISSING:
                return _reply(False, message, kind="not_found")

        _emit_log(
            context,
            "info",
            "Thread setting changed",
            extra={"channel_id": channel_id, "setting": setting, "enabled": enabled},
        )
        return _reply(True, message)

    def _fetch_messages(channel_id: str, context: Context | None = None) -> list[dict[str, Any]]:
        """Drain messages posted to the channel outside a request, such as auto-resume replies."""

        posted = transport.drain(channel_id)
        _emit_log(context, "debug", "Outbox drained", extra={"channel_id": channel_id, "count": len(posted)})
        return [message.as_dict() for message in posted]

    def _list_profiles(context: Context | None = None) -> list[dict[str, Any]]:
        """List the worker profiles available to configure_thread."""

        catalog = [
            {
                "id": profile.id,
                "title": profile.title,
                "description": profile.description,
                "model": profile.model,
            }
            for profile in profiles.load_all().values()
        ]
        catalog.sort(key=lambda item: item["id"])
        _emit_log(context, "debug", "Listing worker profiles", extra={"count": len(catalog)})
        return catalog

    tool_start = server.tool(
        name="start_thread",
        description="Start a session for a channel, bound to a repository checkout.",
    )(_start_thread)

    tool_send = server.tool(
        name="send_message",
        description="Send a chat message to the channel's worker and return its replies.",
    )(_send_message)

    tool_stop = server.tool(
        name="stop_execution",
        description="Stop the invocation currently running for a channel.",
    )(_stop_execution)

    tool_close = server.tool(
        name="close_thread",
        description="Close a channel's session and keep its history.",
    )(_close_thread)

    tool_configure = server.tool(
        name="configure_thread",
        description="Toggle plan, devcontainer or auto-resume (on/off), or select a profile.",
    )(_configure_thread)

    tool_fetch = server.tool(
        name="fetch_messages",
        description="Fetch messages the server posted to a channel on its own, e.g. after auto-resume.",
    )(_fetch_messages)

    tool_profiles = server.tool(
        name="list_profiles",
        description="List available worker profiles.",
    )(_list_profiles)

    return ToolHandles(
        start_thread=tool_start,
        send_message=tool_send,
        stop_execution=tool_stop,
        close_thread=tool_close,
        configure_thread=tool_configure,
        fetch_messages=tool_fetch,
        list_profiles=tool_profiles,
    )


__all__ = ["register_tools", "ToolHandles"]


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)
