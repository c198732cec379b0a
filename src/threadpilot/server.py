"""FastMCP server bootstrap for ThreadPilot."""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .admin import RateLimitCoordinator, SessionRegistry, TokenUsageTracker
from .config import ThreadPilotSettings, get_settings
from .errors import RunnerNotFoundError
from .profiles import ProfileLoadError, ProfileLoader
from .runner import ClaudeRunner, DevcontainerRunner
from .storage import ChromaStore, ChromaUnavailableError, WorkspaceStore
from .stream import MessageFormatter
from .tools import register_tools
from .transport import OutboxTransport
from .worker import WorkerConfiguration, pattern_detector


def configure_logging(level: str, *, verbose: bool = False) -> None:
    """Configure root logging for the ThreadPilot server."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[ThreadPilotSettings] = None,
    runner: ClaudeRunner | None = None,
    *,
    devcontainer_runner: ClaudeRunner | None = None,
    event_log: ChromaStore | None = None,
) -> FastMCP:
    """Wire the engine and expose it through a FastMCP server.

    Active threads and rate-limit timers are restored when the server's
    lifespan starts, on the loop that will keep running them.
    """

    settings = settings or get_settings()

    profile_loader = ProfileLoader(settings.profile_paths)

    runner_metadata = {
        "available": False,
        "version": None,
        "error": None,
    }
    if runner is None:
        try:
            runner = ClaudeRunner(Path(settings.claude_path) if settings.claude_path else None)
            runner_metadata["available"] = True
            runner_metadata["version"] = _run_sync(runner.version()) or None
        except RunnerNotFoundError as exc:
            runner_metadata["error"] = str(exc)
            runner = None
        except OSError as exc:
            runner_metadata["error"] = f"Failed to query version: {exc}"

        try:
            devcontainer_runner = DevcontainerRunner(
                Path(settings.devcontainer_path) if settings.devcontainer_path else None,
                gh_token=os.environ.get("GH_TOKEN"),
            )
        except RunnerNotFoundError:
            devcontainer_runner = None
    else:
        runner_metadata["available"] = True

    store = WorkspaceStore(settings.work_base_dir)
    store.initialize()

    chroma_metadata = {
        "available": False,
        "path": str(settings.chroma_path),
        "collection": "threadpilot_events",
        "error": None,
    }
    if event_log is None:
        try:
            event_log = ChromaStore(settings.chroma_path)
            event_log.ping()
        except ChromaUnavailableError as exc:
            chroma_metadata["error"] = str(exc)
            event_log = None
    chroma_metadata["available"] = event_log is not None

    usage_tracker = TokenUsageTracker()
    transport = OutboxTransport()
    coordinator = RateLimitCoordinator(
        store,
        event_log,
        delay_seconds=settings.rate_limit_delay_seconds,
        resume_policy=settings.resume_policy,
    )
    registry = SessionRegistry(
        store,
        runner,
        coordinator=coordinator,
        configuration=WorkerConfiguration.from_settings(settings),
        formatter=MessageFormatter(
            max_length=settings.max_message_length,
            truncate_length=settings.truncate_length,
        ),
        event_log=event_log,
        transport=transport,
        profiles=profile_loader,
        devcontainer_runner=devcontainer_runner,
        detect_rate_limit=pattern_detector(settings.rate_limit_pattern),
        usage=usage_tracker,
        default_profile=settings.default_profile,
    )

    @asynccontextmanager
    async def lifespan(_server):
        restored = await registry.initialize()
        logging.getLogger(__name__).info("Registry initialized", extra={"restored_threads": restored})
        try:
            yield
        finally:
            await registry.shutdown()

    server = FastMCP(
        name="ThreadPilot",
        version=__version__,
        instructions=(
            "ThreadPilot binds chat channels to Claude CLI sessions. Start a thread for "
            "a channel, send messages to it, and fetch replies posted after a rate limit "
            "lifts."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        registry=registry,
        coordinator=coordinator,
        profiles=profile_loader,
        settings=settings,
        transport=transport,
    )

    @server.resource(
        "resource://threadpilot/status",
        name="threadpilot_status",
        title="ThreadPilot Status",
        description="Active threads, worker phases, rate limits and token usage.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(profile_loader.load_all().keys())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        threads = registry.status()
        phase_counts: dict[str, int] = {}
        for thread in threads:
            phase_counts[thread["phase"]] = phase_counts.get(thread["phase"], 0) + 1

        end_time = coordinator.get_current_rate_limit_end_time()
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "profiles": {
                "count": len(profile_ids),
                "ids": profile_ids,
                "error": profile_error,
            },
            "claude": {
                "path": settings.claude_path,
                **runner_metadata,
            },
            "storage": {
                "work_base_dir": str(settings.work_base_dir),
                "chroma": chroma_metadata,
            },
            "threads": {
                "count": len(threads),
                "phase_counts": phase_counts,
                "items": threads,
            },
            "rate_limit": {
                "active": end_time is not None,
                "end_time": end_time.isoformat() if end_time else None,
                "pending_timers": coordinator.pending_timers(),
                "resume_policy": coordinator.resume_policy,
                "delay_seconds": coordinator.delay_seconds,
            },
            "token_usage": usage_tracker.usage_info().as_dict(),
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "profile_loader", profile_loader)
    setattr(server, "runner", runner)
    setattr(server, "runner_metadata", runner_metadata)
    setattr(server, "workspace_store", store)
    setattr(server, "event_log", event_log)
    setattr(server, "chroma_metadata", chroma_metadata)
    setattr(server, "registry", registry)
    setattr(server, "coordinator", coordinator)
    setattr(server, "transport", transport)
    setattr(server, "usage_tracker", usage_tracker)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the ThreadPilot server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level, verbose=settings.verbose)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching ThreadPilot server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "claude_available": getattr(server, "runner_metadata", {}).get("available"),
            "chroma_available": getattr(server, "chroma_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
