"""Rate-limit bookkeeping, resume timers and the queued-message replay."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from .. import messages
from ..errors import PersistenceError
from ..storage import AuditEntry, ChromaStore, QueuedMessage, WorkerState, WorkspaceStore

logger = logging.getLogger(__name__)

ResumeHandler = Callable[[str, "QueuedMessage | None"], Awaitable[None]]

RESUME_POLICIES = ("oldest", "drain")


class RateLimitCoordinator:
    """Persist rate-limit state and replay queued work once the cooldown ends.

    The only durable form of a timer is ``WorkerState.rate_limit_timestamp``;
    in-memory timers are rebuilt from it by ``restore_rate_limit_timers``.
    """

    def __init__(
        self,
        store: WorkspaceStore,
        event_log: ChromaStore | None = None,
        *,
        delay_seconds: int = 300,
        resume_policy: str = "oldest",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if resume_policy not in RESUME_POLICIES:
            raise ValueError(f"Unknown resume policy '{resume_policy}'")
        self._store = store
        self._event_log = event_log
        self.delay_seconds = delay_seconds
        self.resume_policy = resume_policy
        self._clock = clock
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._resume_handler: ResumeHandler | None = None

    def set_resume_handler(self, handler: ResumeHandler) -> None:
        self._resume_handler = handler

    def resume_timestamp(self, timestamp: int) -> float:
        return float(timestamp + self.delay_seconds)

    def resume_time(self, timestamp: int) -> datetime:
        return datetime.fromtimestamp(self.resume_timestamp(timestamp), tz=timezone.utc)

    def pending_timers(self) -> list[str]:
        return sorted(self._timers)

    def _audit(self, channel_id: str, action: str, details: dict[str, Any]) -> None:
        if self._event_log is None:
            return
        try:
            self._event_log.append_audit(AuditEntry(channel_id=channel_id, action=action, details=details))
        except Exception as exc:  # audit entries are best effort
            logger.warning(
                "Failed to append audit entry",
                extra={"channel_id": channel_id, "action": action, "error": str(exc)},
            )

    def _load(self, channel_id: str) -> WorkerState | None:
        try:
            return self._store.load_worker_state(channel_id)
        except PersistenceError as exc:
            logger.warning("Failed to load worker state", extra={"channel_id": channel_id, "error": str(exc)})
            return None

    async def save_rate_limit_info(self, channel_id: str, timestamp: int) -> None:
        """Record a rate limit, enable auto-resume and start the resume timer."""

        def apply(state: WorkerState) -> None:
            state.rate_limit_timestamp = timestamp
            state.auto_resume_after_rate_limit = True
            state.phase = "rate_limited"

        try:
            updated = self._store.update_worker_state(channel_id, apply)
        except PersistenceError as exc:
            logger.warning(
                "Failed to persist rate limit", extra={"channel_id": channel_id, "error": str(exc)}
            )
            updated = None
        if updated is None:
            logger.warning("No worker state to attach rate limit to", extra={"channel_id": channel_id})

        self.schedule_auto_resume(channel_id, timestamp)
        self._audit(
            channel_id,
            "rate_limit_detected",
            {
                "timestamp": timestamp,
                "resume_time": self.resume_time(timestamp).isoformat(),
                "auto_resume_enabled": True,
            },
        )

    def create_rate_limit_message(self, timestamp: int) -> str:
        return messages.rate_limited(self.resume_time(timestamp))

    def schedule_auto_resume(self, channel_id: str, timestamp: int) -> None:
        """Arm the resume timer for ``channel_id``, replacing any existing one."""

        self.clear_auto_resume_timer(channel_id)
        delay = max(0.0, self.resume_timestamp(timestamp) - self._clock())
        loop = asyncio.get_running_loop()
        self._timers[channel_id] = loop.call_later(delay, self._fire, channel_id)
        logger.debug(
            "Auto-resume timer scheduled",
            extra={"channel_id": channel_id, "timestamp": timestamp, "delay": delay},
        )

    def _fire(self, channel_id: str) -> None:
        self._timers.pop(channel_id, None)
        task = asyncio.ensure_future(self._run_auto_resume(channel_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_auto_resume(self, channel_id: str) -> None:
        try:
            await self.execute_auto_resume(channel_id)
        except Exception:
            logger.exception("Auto-resume failed", extra={"channel_id": channel_id})

    def clear_auto_resume_timer(self, channel_id: str) -> None:
        handle = self._timers.pop(channel_id, None)
        if handle is not None:
            handle.cancel()
            logger.debug("Auto-resume timer cleared", extra={"channel_id": channel_id})

    async def execute_auto_resume(self, channel_id: str) -> bool:
        """Clear the rate limit and replay queued work.

        Returns ``False`` when auto-resume was disabled in the meantime.
        """

        outcome: dict[str, Any] = {}

        def apply(state: WorkerState) -> None:
            outcome.clear()
            if not state.auto_resume_after_rate_limit:
                return
            outcome["timestamp"] = state.rate_limit_timestamp
            outcome["total"] = len(state.queued_messages)
            state.rate_limit_timestamp = None
            state.auto_resume_after_rate_limit = False
            state.phase = "idle"
            if state.queued_messages:
                outcome["message"] = state.queued_messages.pop(0)

        try:
            self._store.update_worker_state(channel_id, apply)
        except PersistenceError as exc:
            logger.warning("Failed to clear rate limit", extra={"channel_id": channel_id, "error": str(exc)})
            return False
        if not outcome:
            logger.debug("Auto-resume skipped", extra={"channel_id": channel_id})
            return False

        self._audit(
            channel_id,
            "auto_resume_executed",
            {"rate_limit_timestamp": outcome["timestamp"], "resume_time": datetime.now(timezone.utc).isoformat()},
        )
        message: QueuedMessage | None = outcome.get("message")
        await self._replay(channel_id, message, position=1, total=outcome["total"])

        if self.resume_policy == "drain" and message is not None:
            await self._drain(channel_id, outcome["total"])
        return True

    async def _drain(self, channel_id: str, total: int) -> None:
        position = 1
        while True:
            state = self._load(channel_id)
            if state is None or state.rate_limit_timestamp is not None or not state.queued_messages:
                return
            popped: list[QueuedMessage] = []

            def apply(current: WorkerState) -> None:
                popped.clear()
                if current.rate_limit_timestamp is None and current.queued_messages:
                    popped.append(current.queued_messages.pop(0))

            try:
                self._store.update_worker_state(channel_id, apply)
            except PersistenceError as exc:
                logger.warning("Failed to dequeue message", extra={"channel_id": channel_id, "error": str(exc)})
                return
            if not popped:
                return
            position += 1
            await self._replay(channel_id, popped[0], position=position, total=total)

    async def _replay(self, channel_id: str, message: QueuedMessage | None, *, position: int, total: int) -> None:
        if self._resume_handler is None:
            logger.warning("No resume handler registered", extra={"channel_id": channel_id})
            return
        try:
            await self._resume_handler(channel_id, message)
        except Exception:
            logger.exception("Resume handler failed", extra={"channel_id": channel_id})
            return
        if message is not None:
            self._audit(
                channel_id,
                "queued_message_processed",
                {
                    "message_id": message.message_id,
                    "author_id": message.author_id,
                    "queue_position": position,
                    "total_queued": total,
                },
            )

    async def restore_rate_limit_timers(self) -> int:
        """Rebuild timers from persisted state; overdue limits resume immediately."""

        try:
            states = self._store.list_worker_states()
        except PersistenceError as exc:
            logger.warning("Failed to list worker states", extra={"error": str(exc)})
            return 0

        candidates = [
            state
            for state in states
            if state.status == "active"
            and state.auto_resume_after_rate_limit
            and state.rate_limit_timestamp is not None
        ]
        logger.debug(
            "Restoring rate-limit timers", extra={"workers": len(states), "rate_limited": len(candidates)}
        )
        restored = 0
        for state in candidates:
            try:
                await self._restore_timer(state)
            except Exception:
                logger.exception("Failed to restore rate-limit timer", extra={"channel_id": state.channel_id})
                continue
            restored += 1
        return restored

    async def _restore_timer(self, state: WorkerState) -> None:
        assert state.rate_limit_timestamp is not None
        timestamp = state.rate_limit_timestamp
        now = self._clock()
        resume_at = self.resume_timestamp(timestamp)
        if now >= resume_at:
            logger.info("Rate limit expired while offline; resuming", extra={"channel_id": state.channel_id})
            await self.execute_auto_resume(state.channel_id)
            self._audit(
                state.channel_id,
                "rate_limit_timer_restored_immediate",
                {"rate_limit_timestamp": timestamp, "current_time": now},
            )
            return
        self.schedule_auto_resume(state.channel_id, timestamp)
        self._audit(
            state.channel_id,
            "rate_limit_timer_restored",
            {
                "rate_limit_timestamp": timestamp,
                "resume_time": self.resume_time(timestamp).isoformat(),
                "delay": resume_at - now,
            },
        )

    async def queue_message(self, channel_id: str, message_id: str, content: str, author_id: str) -> int:
        """Append a message to the channel's queue and return its 1-based position."""

        queued = QueuedMessage(message_id=message_id, author_id=author_id, content=content)
        updated = self._store.update_worker_state(channel_id, lambda state: state.queued_messages.append(queued))
        position = len(updated.queued_messages) if updated is not None else 0
        self._audit(channel_id, "message_queued", {"message_id": message_id, "author_id": author_id, "position": position})
        return position

    def is_rate_limited(self, channel_id: str) -> bool:
        """True while a limit is recorded, unless manual resume was chosen and the cooldown is over."""

        state = self._load(channel_id)
        if state is None or state.rate_limit_timestamp is None:
            return False
        if state.auto_resume_after_rate_limit:
            return True
        return self._clock() < self.resume_timestamp(state.rate_limit_timestamp)

    def clear_rate_limit(self, channel_id: str) -> list[QueuedMessage]:
        """Drop an expired manual-resume limit. Returns the messages that were still queued."""

        dropped: list[QueuedMessage] = []

        def apply(state: WorkerState) -> None:
            dropped[:] = state.queued_messages
            state.rate_limit_timestamp = None
            state.auto_resume_after_rate_limit = False
            state.queued_messages = []
            state.phase = "idle"

        self.clear_auto_resume_timer(channel_id)
        self._store.update_worker_state(channel_id, apply)
        return dropped

    def get_current_rate_limit_end_time(self) -> datetime | None:
        """Latest unexpired resume time across all workers."""

        try:
            states = self._store.list_worker_states()
        except PersistenceError as exc:
            logger.warning("Failed to list worker states", extra={"error": str(exc)})
            return None
        now = self._clock()
        ends = [
            self.resume_timestamp(state.rate_limit_timestamp)
            for state in states
            if state.status == "active" and state.rate_limit_timestamp is not None
        ]
        active = [end for end in ends if end > now]
        if not active:
            return None
        return datetime.fromtimestamp(max(active), tz=timezone.utc)

    def has_active_rate_limit(self) -> bool:
        return self.get_current_rate_limit_end_time() is not None

    async def set_auto_resume(self, channel_id: str, enabled: bool) -> str:
        """Manual override of auto-resume; returns the user-facing confirmation."""

        state = self._load(channel_id)
        if state is None or state.rate_limit_timestamp is None:
            return messages.RATE_LIMIT_INFO_MISSING
        timestamp = state.rate_limit_timestamp
        self._store.update_worker_state(
            channel_id, lambda current: setattr(current, "auto_resume_after_rate_limit", enabled)
        )
        if enabled:
            self.schedule_auto_resume(channel_id, timestamp)
            self._audit(channel_id, "rate_limit_auto_resume_enabled", {"timestamp": timestamp})
            return messages.auto_resume_enabled(self.resume_time(timestamp))
        self.clear_auto_resume_timer(channel_id)
        self._audit(channel_id, "rate_limit_manual_resume_selected", {"timestamp": timestamp})
        return messages.MANUAL_RESUME

    async def shutdown(self) -> None:
        for channel_id in list(self._timers):
            self.clear_auto_resume_timer(channel_id)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


__all__ = ["RESUME_POLICIES", "RateLimitCoordinator", "ResumeHandler"]
