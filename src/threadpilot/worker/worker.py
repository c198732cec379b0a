"""Per-channel worker driving one Claude CLI invocation at a time."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Protocol
from uuid import uuid4

from .. import messages
from ..errors import PersistenceError, SpawnError, StreamError, WorkerBusyError
from ..runner import ClaudeRunner
from ..storage import ChromaStore, QueuedMessage, TranscriptEntry, WorkerState, WorkspaceStore
from ..storage.models import utcnow
from ..stream import (
    AssistantContent,
    ErrorEvent,
    FinalResult,
    MessageFormatter,
    SessionStarted,
    StreamEvent,
    StreamParser,
    ToolResult,
)
from .configuration import WorkerConfiguration
from .notifications import Notification

logger = logging.getLogger(__name__)

RateLimitDetector = Callable[[str], "int | None"]


class Phase(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    RATE_LIMITED = "rate_limited"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RateLimitSink(Protocol):
    async def save_rate_limit_info(self, channel_id: str, timestamp: int) -> None:
        ...

    async def queue_message(
        self, channel_id: str, message_id: str, content: str, author_id: str
    ) -> int:
        ...

    def resume_time(self, timestamp: int) -> datetime:
        ...


class UsageSink(Protocol):
    def add_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        ...


def pattern_detector(pattern: str, clock: Callable[[], float] = time.time) -> RateLimitDetector:
    """Build a detector that matches ``pattern`` against error text.

    A named group ``timestamp`` (epoch seconds) is used when present,
    otherwise the detection time is.
    """

    regex = re.compile(pattern, re.IGNORECASE)

    def detect(message: str) -> int | None:
        match = regex.search(message)
        if match is None:
            return None
        raw = match.groupdict().get("timestamp")
        return int(raw) if raw else int(clock())

    return detect


class Worker:
    """Execution state machine for one channel.

    ``idle -> starting -> streaming -> {completed, rate_limited, cancelled, failed}``;
    every terminal phase except ``rate_limited`` drops straight back to ``idle``.
    A rate-limited worker queues messages until ``resume`` is called.
    """

    def __init__(
        self,
        state: WorkerState,
        store: WorkspaceStore,
        runner: ClaudeRunner | None,
        *,
        configuration: WorkerConfiguration | None = None,
        formatter: MessageFormatter | None = None,
        devcontainer_runner: ClaudeRunner | None = None,
        event_log: ChromaStore | None = None,
        detect_rate_limit: RateLimitDetector | None = None,
        rate_limits: RateLimitSink | None = None,
        usage: UsageSink | None = None,
    ) -> None:
        self._state = state
        self._store = store
        self._runner = runner
        self._devcontainer_runner = devcontainer_runner
        self._configuration = configuration or WorkerConfiguration()
        self._formatter = formatter or MessageFormatter()
        self._event_log = event_log
        self._detect_rate_limit = detect_rate_limit or (lambda _message: None)
        self._rate_limits = rate_limits
        self._usage = usage
        self._phase = Phase.RATE_LIMITED if state.rate_limit_timestamp else Phase.IDLE
        self._cancel_event: asyncio.Event | None = None
        self._process: Any = None

    @property
    def name(self) -> str:
        return self._state.worker_name

    @property
    def channel_id(self) -> str:
        return self._state.channel_id

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def configuration(self) -> WorkerConfiguration:
        return self._configuration

    def is_plan_mode(self) -> bool:
        return self._state.plan_mode

    def uses_devcontainer(self) -> bool:
        return self._state.use_devcontainer

    def _set_phase(self, phase: Phase) -> None:
        if phase is not self._phase:
            logger.debug(
                "Worker phase change",
                extra={"worker": self.name, "from": self._phase.value, "to": phase.value},
            )
        self._phase = phase

    def _update(self, mutate: Callable[[WorkerState], None]) -> None:
        """Apply ``mutate`` to the persisted state; fall back to memory if the store fails."""

        try:
            updated = self._store.update_worker_state(self.channel_id, mutate, default=self._state)
        except PersistenceError as exc:
            logger.warning(
                "Failed to persist worker state",
                extra={"worker": self.name, "channel_id": self.channel_id, "error": str(exc)},
            )
            mutate(self._state)
            return
        if updated is not None:
            self._state = updated

    def refresh(self) -> WorkerState:
        """Reload the persisted state, picking up changes made by the rate-limit coordinator."""

        try:
            stored = self._store.load_worker_state(self.channel_id)
        except PersistenceError as exc:
            logger.warning("Failed to reload worker state", extra={"channel_id": self.channel_id, "error": str(exc)})
            return self._state
        if stored is not None:
            self._state = stored
        return self._state

    def set_repository(self, full_name: str, path: str) -> None:
        def apply(state: WorkerState) -> None:
            state.repository_full_name = full_name
            state.repository_path = path
            state.last_active_at = utcnow()

        self._update(apply)

    def set_plan_mode(self, enabled: bool) -> None:
        self._update(lambda state: setattr(state, "plan_mode", enabled))

    def set_use_devcontainer(self, enabled: bool) -> None:
        self._update(lambda state: setattr(state, "use_devcontainer", enabled))

    def set_profile(self, profile_id: str | None, configuration: WorkerConfiguration) -> None:
        self._configuration = configuration
        self._update(lambda state: setattr(state, "profile_id", profile_id))

    def archive(self) -> None:
        def apply(state: WorkerState) -> None:
            state.status = "archived"
            state.phase = Phase.IDLE.value
            state.rate_limit_timestamp = None
            state.auto_resume_after_rate_limit = False
            state.queued_messages = []

        self._update(apply)

    def resume(self) -> None:
        """Leave the rate-limited phase after the coordinator cleared the limit."""

        self.refresh()
        if self._phase is Phase.RATE_LIMITED:
            self._set_phase(Phase.IDLE)

    def stop_execution(self) -> bool:
        """Request cancellation. Returns ``False`` when nothing is running."""

        if self._phase not in (Phase.STARTING, Phase.STREAMING) or self._cancel_event is None:
            return False
        self._set_phase(Phase.CANCELLED)
        self._cancel_event.set()
        logger.info("Cancellation requested", extra={"worker": self.name, "channel_id": self.channel_id})
        return True

    async def _enqueue(self, message_id: str, content: str, author_id: str) -> int:
        if self._rate_limits is not None:
            return await self._rate_limits.queue_message(self.channel_id, message_id, content, author_id)
        queued = QueuedMessage(message_id=message_id, author_id=author_id, content=content)
        self._update(lambda state: state.queued_messages.append(queued))
        return len(self._state.queued_messages)

    def _resume_time(self, timestamp: int) -> datetime:
        if self._rate_limits is not None:
            return self._rate_limits.resume_time(timestamp)
        return datetime.fromtimestamp(timestamp, tz=timezone.utc) + timedelta(minutes=5)

    async def process_message(
        self,
        text: str,
        *,
        message_id: str | None = None,
        author_id: str | None = None,
    ) -> AsyncIterator[Notification]:
        """Run one invocation, yielding progress and exactly one final notification."""

        if self._phase is Phase.RATE_LIMITED:
            position = await self._enqueue(message_id or uuid4().hex, text, author_id or "unknown")
            timestamp = self._state.rate_limit_timestamp
            yield Notification(
                "queued", messages.queued(self._resume_time(timestamp) if timestamp else None, position)
            )
            return
        if self._phase is not Phase.IDLE:
            raise WorkerBusyError(self.channel_id, self._phase.value)
        if not self._state.repository_path:
            yield Notification("error", messages.NO_REPOSITORY)
            return

        queue: asyncio.Queue[Notification | None] = asyncio.Queue()
        cancel_event = self._cancel_event = asyncio.Event()
        self._set_phase(Phase.STARTING)
        task = asyncio.create_task(self._execute(text, queue))
        try:
            while True:
                notification = await queue.get()
                if notification is None:
                    break
                yield notification
        finally:
            if not task.done():
                cancel_event.set()
            await task

    def _select_runner(self) -> ClaudeRunner:
        if not self._state.use_devcontainer:
            if self._runner is None:
                raise SpawnError("claude executable is not available")
            return self._runner
        if self._devcontainer_runner is None:
            raise SpawnError("devcontainer execution requested but no devcontainer runner is configured")
        return self._devcontainer_runner

    async def _execute(self, text: str, queue: asyncio.Queue[Notification | None]) -> None:
        assert self._cancel_event is not None
        cancel_event = self._cancel_event
        parser = StreamParser()
        transcript: list[tuple[str, str]] = [("user", text)]
        session_ids: list[str] = []
        errors: list[str] = []
        final_text: str | None = None
        rate_limit_at: int | None = None
        pending_progress: str | None = None
        last_progress: str | None = None

        def emit_progress(content: str) -> None:
            nonlocal last_progress
            if not content or content == last_progress:
                return
            last_progress = content
            transcript.append(("progress", content))
            queue.put_nowait(Notification("progress", content))

        def hold_progress(content: str) -> None:
            # Assistant text is held back one event so it can be dropped if
            # the final result repeats it.
            nonlocal pending_progress
            flush_progress()
            pending_progress = content

        def flush_progress() -> None:
            nonlocal pending_progress
            if pending_progress is not None:
                emit_progress(pending_progress)
                pending_progress = None

        def handle(event: StreamEvent) -> None:
            nonlocal final_text, rate_limit_at, pending_progress
            if isinstance(event, SessionStarted):
                if not session_ids:
                    emit_progress(messages.THINKING)
                if event.session_id not in session_ids:
                    session_ids.append(event.session_id)
            elif isinstance(event, AssistantContent):
                for item in event.items:
                    for rendered in self._formatter.format_content_items([item]):
                        if item.get("type") == "text":
                            hold_progress(rendered)
                        else:
                            flush_progress()
                            emit_progress(rendered)
            elif isinstance(event, ToolResult):
                flush_progress()
                for rendered in self._formatter.format_content_items(event.payload):
                    emit_progress(rendered)
            elif isinstance(event, FinalResult):
                final_text = event.text
                if pending_progress is not None and pending_progress == self._formatter.finalize(event.text):
                    pending_progress = None
                flush_progress()
                if event.session_id and event.session_id not in session_ids:
                    session_ids.append(event.session_id)
                if self._usage is not None and event.usage:
                    self._usage.add_token_usage(
                        int(event.usage.get("input_tokens", 0) or 0),
                        int(event.usage.get("output_tokens", 0) or 0),
                    )
            elif isinstance(event, ErrorEvent):
                flush_progress()
                detected = self._detect_rate_limit(event.message)
                if detected is not None:
                    if rate_limit_at is None:
                        rate_limit_at = detected
                        self._set_phase(Phase.RATE_LIMITED)
                        cancel_event.set()
                    return
                errors.append(event.message)
                emit_progress(self._formatter.finalize(event.message))

        def handle_safely(event: StreamEvent) -> None:
            try:
                handle(event)
            except Exception:
                logger.exception(
                    "Skipping stream event that could not be handled",
                    extra={"worker": self.name, "event": type(event).__name__},
                )

        def on_data(chunk: bytes) -> None:
            for event in parser.feed(chunk):
                handle_safely(event)

        def on_started(process: Any) -> None:
            self._process = process
            if self._phase is Phase.STARTING:
                self._set_phase(Phase.STREAMING)
            queue.put_nowait(Notification("reaction", "👀"))

        runner_result = None
        failure: str | None = None
        final: Notification
        try:
            runner = self._select_runner()
            args = self._configuration.build_args(
                text, session_id=self._state.session_id, plan_mode=self._state.plan_mode
            )
            runner_result = await runner.execute_streaming(
                args,
                self._state.repository_path or ".",
                on_data,
                cancel_event,
                on_started,
                self._configuration.build_env(),
            )
            for event in parser.finish():
                handle_safely(event)
            flush_progress()
        except SpawnError as exc:
            logger.error("Failed to start CLI", extra={"worker": self.name, "error": str(exc)})
            failure = messages.SPAWN_FAILED
            self._set_phase(Phase.FAILED)
        except StreamError as exc:
            if rate_limit_at is None and not exc.cancelled and self._phase is not Phase.CANCELLED:
                logger.error("CLI stream failed", extra={"worker": self.name, "error": str(exc)})
                failure = messages.STREAM_FAILED
                self._set_phase(Phase.FAILED)
            elif rate_limit_at is None:
                self._set_phase(Phase.CANCELLED)
        except Exception:
            logger.exception("Unexpected worker failure", extra={"worker": self.name})
            failure = messages.STREAM_FAILED
            self._set_phase(Phase.FAILED)
        finally:
            self._process = None

        try:
            if rate_limit_at is not None:
                self._set_phase(Phase.RATE_LIMITED)
                self._update(lambda state: setattr(state, "phase", Phase.RATE_LIMITED.value))
                if self._rate_limits is not None:
                    await self._rate_limits.save_rate_limit_info(self.channel_id, rate_limit_at)
                else:
                    self._update(lambda state: setattr(state, "rate_limit_timestamp", rate_limit_at))
                final = Notification("rate_limited", messages.rate_limited(self._resume_time(rate_limit_at)))
            elif self._phase is Phase.CANCELLED:
                final = Notification("cancelled", messages.CANCELLED)
            elif self._phase is Phase.FAILED:
                final = Notification("error", failure or messages.STREAM_FAILED)
            elif final_text is not None:
                self._set_phase(Phase.COMPLETED)
                final = Notification("reply", self._formatter.finalize(final_text) or messages.EMPTY_REPLY)
            elif errors:
                self._set_phase(Phase.FAILED)
                final = Notification("error", self._formatter.finalize("\n".join(errors)))
            elif runner_result is not None and not runner_result.ok:
                self._set_phase(Phase.FAILED)
                final = Notification(
                    "error", messages.command_failed(runner_result.returncode, runner_result.stderr)
                )
            else:
                self._set_phase(Phase.COMPLETED)
                final = Notification("reply", messages.EMPTY_REPLY)

            transcript.append(("assistant" if final.kind == "reply" else "error", final.content))
            self._finish_invocation(session_ids[-1] if session_ids else None, transcript)
            queue.put_nowait(final)
        finally:
            if self._phase is not Phase.RATE_LIMITED:
                self._set_phase(Phase.IDLE)
            self._cancel_event = None
            queue.put_nowait(None)

    def _finish_invocation(self, session_id: str | None, transcript: list[tuple[str, str]]) -> None:
        outcome = self._phase.value

        def apply(state: WorkerState) -> None:
            if session_id:
                state.session_id = session_id
            state.phase = Phase.IDLE.value if self._phase is not Phase.RATE_LIMITED else outcome
            state.last_active_at = utcnow()

        self._update(apply)
        logger.info(
            "Invocation finished",
            extra={"worker": self.name, "channel_id": self.channel_id, "outcome": outcome},
        )

        if self._event_log is None:
            return
        key = session_id or self._state.session_id or "unassigned"
        try:
            for role, content in transcript:
                self._event_log.append_transcript(
                    TranscriptEntry(channel_id=self.channel_id, session_id=key, role=role, content=content)
                )
        except Exception as exc:  # best effort: transcript loss must not fail the reply
            logger.warning(
                "Failed to append transcript",
                extra={"channel_id": self.channel_id, "session_id": key, "error": str(exc)},
            )


__all__ = ["Phase", "RateLimitDetector", "RateLimitSink", "Worker", "pattern_detector"]
