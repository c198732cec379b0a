"""Channel to worker registry with explicit lifecycle."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator
from uuid import uuid4

from .. import messages
from ..errors import PersistenceError, WorkerAlreadyExistsError, WorkerBusyError, WorkerNotFoundError
from ..profiles import ProfileLoader, ProfileLoadError
from ..runner import ClaudeRunner
from ..storage import AuditEntry, ChromaStore, QueuedMessage, ThreadSession, WorkerState, WorkspaceStore
from ..storage.models import utcnow
from ..stream import MessageFormatter
from ..transport import ChatTransport
from ..worker import Notification, Phase, RateLimitDetector, Worker, WorkerConfiguration, collect
from .rate_limit import RateLimitCoordinator
from .usage import TokenUsageTracker

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Single owner of the channel to worker mapping.

    Lifecycle: ``initialize`` (prepares storage and restores active threads),
    then routing calls, then ``shutdown``.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        runner: ClaudeRunner | None,
        *,
        coordinator: RateLimitCoordinator,
        configuration: WorkerConfiguration | None = None,
        formatter: MessageFormatter | None = None,
        event_log: ChromaStore | None = None,
        transport: ChatTransport | None = None,
        profiles: ProfileLoader | None = None,
        devcontainer_runner: ClaudeRunner | None = None,
        detect_rate_limit: RateLimitDetector | None = None,
        usage: TokenUsageTracker | None = None,
        default_profile: str | None = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._coordinator = coordinator
        self._configuration = configuration or WorkerConfiguration()
        self._formatter = formatter or MessageFormatter()
        self._event_log = event_log
        self._transport = transport
        self._profiles = profiles
        self._devcontainer_runner = devcontainer_runner
        self._detect_rate_limit = detect_rate_limit
        self._usage = usage
        self._default_profile = default_profile
        self._workers: dict[str, Worker] = {}
        coordinator.set_resume_handler(self._on_resume)

    @property
    def coordinator(self) -> RateLimitCoordinator:
        return self._coordinator

    @property
    def store(self) -> WorkspaceStore:
        return self._store

    @property
    def workers(self) -> dict[str, Worker]:
        return dict(self._workers)

    async def initialize(self) -> int:
        self._store.initialize()
        return await self.restore_active_threads()

    async def shutdown(self) -> None:
        for worker in self._workers.values():
            worker.stop_execution()
        await self._coordinator.shutdown()
        logger.info("Session registry shut down", extra={"workers": len(self._workers)})

    def _audit(self, channel_id: str, action: str, details: dict[str, Any] | None = None) -> None:
        if self._event_log is None:
            return
        try:
            self._event_log.append_audit(AuditEntry(channel_id=channel_id, action=action, details=details or {}))
        except Exception as exc:  # audit entries are best effort
            logger.warning(
                "Failed to append audit entry",
                extra={"channel_id": channel_id, "action": action, "error": str(exc)},
            )

    def _configuration_for(self, profile_id: str | None) -> WorkerConfiguration:
        if not profile_id or self._profiles is None:
            return self._configuration.with_profile(None)
        return self._configuration.with_profile(self._profiles.get(profile_id))

    def _build_worker(self, state: WorkerState) -> Worker:
        try:
            configuration = self._configuration_for(state.profile_id)
        except ProfileLoadError as exc:
            logger.warning(
                "Profile unavailable; using defaults",
                extra={"channel_id": state.channel_id, "profile_id": state.profile_id, "error": str(exc)},
            )
            configuration = self._configuration_for(None)
        return Worker(
            state,
            self._store,
            self._runner,
            configuration=configuration,
            formatter=self._formatter,
            devcontainer_runner=self._devcontainer_runner,
            event_log=self._event_log,
            detect_rate_limit=self._detect_rate_limit,
            rate_limits=self._coordinator,
            usage=self._usage,
        )

    def create_worker(self, channel_id: str) -> Worker:
        """Register a fresh idle worker. Nothing is persisted until it is configured."""

        if channel_id in self._workers:
            raise WorkerAlreadyExistsError(channel_id)
        state = WorkerState(worker_name=f"worker-{uuid4().hex[:8]}", channel_id=channel_id)
        worker = self._build_worker(state)
        self._workers[channel_id] = worker
        logger.info("Worker created", extra={"channel_id": channel_id, "worker": worker.name})
        return worker

    def get_worker(self, channel_id: str) -> Worker:
        try:
            return self._workers[channel_id]
        except KeyError:
            raise WorkerNotFoundError(channel_id) from None

    def start_thread(
        self,
        channel_id: str,
        repository_full_name: str,
        repository_path: str,
        *,
        profile_id: str | None = None,
    ) -> Worker:
        """Create the channel's worker, bind it to a repository and persist the session."""

        profile_id = profile_id or self._default_profile
        configuration = self._configuration_for(profile_id) if profile_id else None
        worker = self.create_worker(channel_id)
        try:
            # Replaces whatever an earlier, archived thread left for this channel.
            self._store.save_worker_state(worker.state)
        except PersistenceError as exc:
            logger.warning("Failed to persist worker state", extra={"channel_id": channel_id, "error": str(exc)})
        worker.set_repository(repository_full_name, repository_path)
        if profile_id and configuration is not None:
            worker.set_profile(profile_id, configuration)
        thread = ThreadSession(
            channel_id=channel_id,
            repository_full_name=repository_full_name,
            repository_path=repository_path,
        )
        try:
            self._store.save_thread(thread)
        except PersistenceError as exc:
            logger.warning("Failed to persist thread session", extra={"channel_id": channel_id, "error": str(exc)})
        self._audit(
            channel_id,
            "thread_created",
            {"repository": repository_full_name, "worker": worker.name, "profile_id": profile_id},
        )
        return worker

    async def route_message(
        self,
        channel_id: str,
        text: str,
        *,
        message_id: str | None = None,
        author_id: str | None = None,
    ) -> AsyncIterator[Notification]:
        """Deliver an inbound message, queueing it while the channel is rate limited."""

        worker = self.get_worker(channel_id)
        if self._coordinator.is_rate_limited(channel_id):
            message_id = message_id or uuid4().hex
            try:
                position = await self._coordinator.queue_message(channel_id, message_id, text, author_id or "unknown")
            except PersistenceError as exc:
                logger.warning(
                    "Failed to queue message during rate limit",
                    extra={"channel_id": channel_id, "message_id": message_id, "error": str(exc)},
                )
                yield Notification("error", messages.QUEUE_FAILED)
                return
            timestamp = worker.refresh().rate_limit_timestamp
            resume_at = self._coordinator.resume_time(timestamp) if timestamp is not None else None
            yield Notification("queued", messages.queued(resume_at, position))
            return
        if worker.phase is Phase.RATE_LIMITED:
            # Manual resume was chosen and the cooldown has passed.
            self._coordinator.clear_rate_limit(channel_id)
            worker.resume()

        self._touch_thread(channel_id)
        async for notification in worker.process_message(text, message_id=message_id, author_id=author_id):
            yield notification

    def _touch_thread(self, channel_id: str) -> None:
        try:
            thread = self._store.load_thread(channel_id)
            if thread is not None:
                thread.last_active_at = utcnow()
                self._store.save_thread(thread)
        except PersistenceError as exc:
            logger.warning("Failed to update thread activity", extra={"channel_id": channel_id, "error": str(exc)})

    def stop_execution(self, channel_id: str) -> bool:
        return self.get_worker(channel_id).stop_execution()

    def set_plan_mode(self, channel_id: str, enabled: bool) -> None:
        self.get_worker(channel_id).set_plan_mode(enabled)

    def set_devcontainer(self, channel_id: str, enabled: bool) -> None:
        self.get_worker(channel_id).set_use_devcontainer(enabled)

    def set_profile(self, channel_id: str, profile_id: str | None) -> None:
        """Switch the worker's profile; raises ``ProfileLoadError`` for unknown ids."""

        worker = self.get_worker(channel_id)
        worker.set_profile(profile_id, self._configuration_for(profile_id))

    def terminate_thread(self, channel_id: str) -> bool:
        """Stop and archive the channel. Succeeds even when nothing is registered.

        Returns whether an active worker or session was found.
        """

        worker = self._workers.pop(channel_id, None)
        if worker is not None:
            worker.stop_execution()
            worker.archive()
        self._coordinator.clear_auto_resume_timer(channel_id)

        found = worker is not None
        try:
            if worker is None:
                self._store.update_worker_state(channel_id, _archive_state)
            thread = self._store.load_thread(channel_id)
            if thread is not None and thread.status == "active":
                thread.status = "archived"
                thread.last_active_at = utcnow()
                self._store.save_thread(thread)
                found = True
        except PersistenceError as exc:
            logger.warning("Failed to archive thread", extra={"channel_id": channel_id, "error": str(exc)})

        if found:
            self._audit(channel_id, "thread_terminated")
            logger.info("Thread terminated", extra={"channel_id": channel_id})
        return found

    async def restore_active_threads(self) -> int:
        """Rebuild workers for every active session, then their rate-limit timers."""

        try:
            threads = self._store.list_threads(status="active")
        except PersistenceError as exc:
            logger.warning("Failed to list thread sessions", extra={"error": str(exc)})
            return 0

        restored = 0
        for thread in threads:
            if thread.channel_id in self._workers:
                continue
            try:
                state = self._store.load_worker_state(thread.channel_id)
                if state is None or state.status != "active":
                    state = WorkerState(
                        worker_name=f"worker-{uuid4().hex[:8]}",
                        channel_id=thread.channel_id,
                        repository_full_name=thread.repository_full_name,
                        repository_path=thread.repository_path,
                    )
                self._workers[thread.channel_id] = self._build_worker(state)
            except Exception:
                logger.exception("Failed to restore thread", extra={"channel_id": thread.channel_id})
                continue
            restored += 1

        logger.info("Active threads restored", extra={"restored": restored, "total": len(threads)})
        await self._coordinator.restore_rate_limit_timers()
        return restored

    async def _on_resume(self, channel_id: str, message: QueuedMessage | None) -> None:
        worker = self._workers.get(channel_id)
        if worker is None:
            logger.warning("Resume for unknown channel", extra={"channel_id": channel_id})
            return
        worker.resume()
        if message is None:
            return
        try:
            outcome = await collect(
                worker.process_message(message.content, message_id=message.message_id, author_id=message.author_id)
            )
        except WorkerBusyError:
            logger.warning("Worker busy during auto-resume", extra={"channel_id": channel_id})
            await self._post(channel_id, messages.BUSY)
            return
        for progress in outcome.progress:
            await self._post(channel_id, progress)
        if outcome.final is not None:
            await self._post(channel_id, outcome.final.content)

    async def _post(self, channel_id: str, content: str) -> None:
        if self._transport is None:
            logger.debug("No transport configured; dropping message", extra={"channel_id": channel_id})
            return
        await self._transport.post_message(channel_id, content)

    def status(self) -> list[dict[str, Any]]:
        snapshot = []
        for channel_id, worker in sorted(self._workers.items()):
            state = worker.refresh()
            snapshot.append(
                {
                    "channel_id": channel_id,
                    "worker": worker.name,
                    "phase": worker.phase.value,
                    "repository": state.repository_full_name,
                    "session_id": state.session_id,
                    "plan_mode": state.plan_mode,
                    "use_devcontainer": state.use_devcontainer,
                    "profile_id": state.profile_id,
                    "rate_limit_timestamp": state.rate_limit_timestamp,
                    "queued_messages": len(state.queued_messages),
                }
            )
        return snapshot


def _archive_state(state: WorkerState) -> None:
    state.status = "archived"
    state.phase = "idle"
    state.rate_limit_timestamp = None
    state.auto_resume_after_rate_limit = False
    state.queued_messages = []


__all__ = ["SessionRegistry"]
