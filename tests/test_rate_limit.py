from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from threadpilot import messages
from threadpilot.admin import RateLimitCoordinator
from threadpilot.storage import AuditEntry, QueuedMessage, WorkerState, WorkspaceStore


class Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RecordingAudit:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    def append_audit(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    @property
    def actions(self) -> list[str]:
        return [entry.action for entry in self.entries]


class FailingAudit:
    def append_audit(self, entry: AuditEntry) -> None:
        raise RuntimeError("chroma is down")


def _setup(tmp_path: Path, now: float = 1000.0, **kwargs):
    store = WorkspaceStore(tmp_path / "work")
    store.initialize()
    store.save_worker_state(WorkerState(worker_name="w", channel_id="C1"))
    clock = Clock(now)
    audit = RecordingAudit()
    coordinator = RateLimitCoordinator(store, audit, clock=clock, **kwargs)
    replayed: list[tuple[str, QueuedMessage | None]] = []

    async def handler(channel_id: str, message: QueuedMessage | None) -> None:
        replayed.append((channel_id, message))

    coordinator.set_resume_handler(handler)
    return store, clock, audit, coordinator, replayed


def test_save_rate_limit_info_marks_channel_until_resume(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        assert coordinator.is_rate_limited("C1")
        assert coordinator.pending_timers() == ["C1"]
        assert coordinator.get_current_rate_limit_end_time() == datetime.fromtimestamp(1300, tz=timezone.utc)
        assert coordinator.has_active_rate_limit()

        clock.now = 1400
        # Past the end time but not yet resumed: still limited, no longer "active" for status.
        assert coordinator.is_rate_limited("C1")
        assert coordinator.get_current_rate_limit_end_time() is None

        assert await coordinator.execute_auto_resume("C1") is True
        assert not coordinator.is_rate_limited("C1")
        await coordinator.shutdown()

    asyncio.run(scenario())

    assert replayed == [("C1", None)]
    assert audit.actions == ["rate_limit_detected", "auto_resume_executed"]
    state = store.load_worker_state("C1")
    assert state.rate_limit_timestamp is None
    assert state.auto_resume_after_rate_limit is False


def test_oldest_policy_replays_one_message_per_cycle(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        assert await coordinator.queue_message("C1", "m1", "first", "u1") == 1
        assert await coordinator.queue_message("C1", "m2", "second", "u2") == 2
        clock.now = 1301
        await coordinator.execute_auto_resume("C1")
        await coordinator.shutdown()

    asyncio.run(scenario())

    assert [message.content for _, message in replayed] == ["first"]
    assert [message.content for message in store.load_worker_state("C1").queued_messages] == ["second"]
    assert audit.actions == [
        "rate_limit_detected",
        "message_queued",
        "message_queued",
        "auto_resume_executed",
        "queued_message_processed",
    ]
    assert audit.entries[-1].details["total_queued"] == 2


def test_drain_policy_replays_queue_in_order(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path, resume_policy="drain")

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        for index in range(3):
            await coordinator.queue_message("C1", f"m{index}", f"msg {index}", "u")
        clock.now = 1301
        await coordinator.execute_auto_resume("C1")
        await coordinator.shutdown()

    asyncio.run(scenario())

    assert [message.content for _, message in replayed] == ["msg 0", "msg 1", "msg 2"]
    assert store.load_worker_state("C1").queued_messages == []


def test_drain_stops_when_a_new_rate_limit_hits(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path, resume_policy="drain")

    async def limiting_handler(channel_id: str, message: QueuedMessage | None) -> None:
        replayed.append((channel_id, message))
        await coordinator.save_rate_limit_info(channel_id, int(clock.now))

    coordinator.set_resume_handler(limiting_handler)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        await coordinator.queue_message("C1", "m1", "first", "u")
        await coordinator.queue_message("C1", "m2", "second", "u")
        clock.now = 1301
        await coordinator.execute_auto_resume("C1")
        await coordinator.shutdown()

    asyncio.run(scenario())

    assert [message.content for _, message in replayed] == ["first"]
    state = store.load_worker_state("C1")
    assert state.rate_limit_timestamp == 1301
    assert [message.content for message in state.queued_messages] == ["second"]


def test_disabled_auto_resume_is_a_noop(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path)

    async def scenario() -> str:
        await coordinator.save_rate_limit_info("C1", 1000)
        reply = await coordinator.set_auto_resume("C1", False)
        assert coordinator.pending_timers() == []
        assert await coordinator.execute_auto_resume("C1") is False
        return reply

    reply = asyncio.run(scenario())

    assert reply == messages.MANUAL_RESUME
    assert replayed == []
    assert store.load_worker_state("C1").rate_limit_timestamp == 1000
    assert "rate_limit_manual_resume_selected" in audit.actions


def test_manual_resume_lifts_limit_after_cooldown(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        await coordinator.set_auto_resume("C1", False)

    asyncio.run(scenario())

    assert coordinator.is_rate_limited("C1")
    clock.now = 1300
    assert not coordinator.is_rate_limited("C1")
    coordinator.clear_rate_limit("C1")
    assert store.load_worker_state("C1").rate_limit_timestamp is None


def test_reenabling_auto_resume_reschedules(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path)

    async def scenario() -> str:
        await coordinator.save_rate_limit_info("C1", 1000)
        await coordinator.set_auto_resume("C1", False)
        reply = await coordinator.set_auto_resume("C1", True)
        assert coordinator.pending_timers() == ["C1"]
        await coordinator.shutdown()
        return reply

    reply = asyncio.run(scenario())

    assert reply == messages.auto_resume_enabled(datetime.fromtimestamp(1300, tz=timezone.utc))


def test_set_auto_resume_without_rate_limit(tmp_path: Path) -> None:
    _, _, _, coordinator, _ = _setup(tmp_path)

    assert asyncio.run(coordinator.set_auto_resume("C1", True)) == messages.RATE_LIMIT_INFO_MISSING


def test_timer_fires_and_resumes(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path, delay_seconds=0)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        await coordinator.queue_message("C1", "m1", "queued", "u")
        for _ in range(50):
            if replayed:
                break
            await asyncio.sleep(0.01)
        await coordinator.shutdown()

    asyncio.run(scenario())

    assert [message.content for _, message in replayed] == ["queued"]
    assert coordinator.pending_timers() == []


def test_schedule_replaces_existing_timer(tmp_path: Path) -> None:
    _, _, _, coordinator, _ = _setup(tmp_path)

    async def scenario() -> None:
        coordinator.schedule_auto_resume("C1", 1000)
        first = coordinator._timers["C1"]
        coordinator.schedule_auto_resume("C1", 1100)
        assert first.cancelled()
        assert coordinator.pending_timers() == ["C1"]
        coordinator.clear_auto_resume_timer("C1")
        assert coordinator.pending_timers() == []

    asyncio.run(scenario())


def test_restore_timers_resumes_overdue_and_reschedules_pending(tmp_path: Path) -> None:
    store, clock, audit, coordinator, replayed = _setup(tmp_path, now=1301.0)
    def limited(state: WorkerState) -> None:
        state.rate_limit_timestamp = 1000
        state.auto_resume_after_rate_limit = True
        state.queued_messages.append(QueuedMessage(message_id="m1", author_id="u", content="later"))

    store.update_worker_state("C1", limited)
    store.save_worker_state(
        WorkerState(worker_name="w2", channel_id="C2", rate_limit_timestamp=1200, auto_resume_after_rate_limit=True)
    )
    store.save_worker_state(
        WorkerState(worker_name="w3", channel_id="C3", rate_limit_timestamp=900, auto_resume_after_rate_limit=False)
    )

    async def scenario() -> int:
        restored = await coordinator.restore_rate_limit_timers()
        assert coordinator.pending_timers() == ["C2"]
        await coordinator.shutdown()
        return restored

    assert asyncio.run(scenario()) == 2
    assert [(channel, message.content) for channel, message in replayed] == [("C1", "later")]
    assert "rate_limit_timer_restored_immediate" in audit.actions
    assert "rate_limit_timer_restored" in audit.actions
    assert store.load_worker_state("C3").rate_limit_timestamp == 900


def test_audit_failures_are_swallowed(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = WorkspaceStore(tmp_path)
    store.save_worker_state(WorkerState(worker_name="w", channel_id="C1"))
    coordinator = RateLimitCoordinator(store, FailingAudit(), clock=lambda: 1000.0)

    async def scenario() -> None:
        await coordinator.save_rate_limit_info("C1", 1000)
        await coordinator.shutdown()

    with caplog.at_level("WARNING"):
        asyncio.run(scenario())

    assert coordinator.is_rate_limited("C1")
    assert "Failed to append audit entry" in caplog.text


def test_unknown_resume_policy_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        RateLimitCoordinator(WorkspaceStore(tmp_path), resume_policy="everything")


def test_create_rate_limit_message(tmp_path: Path) -> None:
    _, _, _, coordinator, _ = _setup(tmp_path)

    text = coordinator.create_rate_limit_message(1000)

    assert "1970-01-01 00:21 UTC" in text
