from __future__ import annotations

from pathlib import Path

import pytest

from threadpilot.errors import ConcurrentUpdateError, CorruptRecordError
from threadpilot.storage import QueuedMessage, ThreadSession, WorkerState, WorkspaceStore


def _store(tmp_path: Path) -> WorkspaceStore:
    store = WorkspaceStore(tmp_path / "work")
    store.initialize()
    return store


def test_missing_records_read_as_none(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert store.load_thread("nope") is None
    assert store.load_worker_state("nope") is None
    assert store.update_worker_state("nope", lambda state: None) is None


def test_thread_roundtrip_and_status_filter(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_thread(ThreadSession(channel_id="c1", repository_full_name="acme/app"))
    store.save_thread(ThreadSession(channel_id="c/2", status="archived"))

    assert store.load_thread("c1").repository_full_name == "acme/app"
    assert [thread.channel_id for thread in store.list_threads(status="active")] == ["c1"]
    assert {thread.channel_id for thread in store.list_threads()} == {"c1", "c/2"}
    assert (store.threads_dir / "c%2F2.json").exists()


def test_save_bumps_revision_and_detects_conflicts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    state = WorkerState(worker_name="w", channel_id="c1")

    saved = store.save_worker_state(state)
    assert saved.revision == 1

    stale = store.load_worker_state("c1")
    store.save_worker_state(store.load_worker_state("c1"), expected_revision=1)

    with pytest.raises(ConcurrentUpdateError):
        store.save_worker_state(stale, expected_revision=1)


def test_update_worker_state_uses_default_for_first_write(tmp_path: Path) -> None:
    store = _store(tmp_path)
    default = WorkerState(worker_name="w", channel_id="c1", revision=7)

    updated = store.update_worker_state("c1", lambda state: setattr(state, "plan_mode", True), default=default)

    assert updated.plan_mode is True
    assert updated.revision == 1
    assert default.plan_mode is False


def test_update_worker_state_appends_queue(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_worker_state(WorkerState(worker_name="w", channel_id="c1"))

    for index in range(3):
        message = QueuedMessage(message_id=f"m{index}", author_id="u", content=f"msg {index}")
        store.update_worker_state("c1", lambda state, message=message: state.queued_messages.append(message))

    stored = store.load_worker_state("c1")
    assert [message.message_id for message in stored.queued_messages] == ["m0", "m1", "m2"]
    assert stored.revision == 4


def test_update_gives_up_after_repeated_conflicts(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_worker_state(WorkerState(worker_name="w", channel_id="c1"))

    def interfere(state: WorkerState) -> None:
        # Another writer sneaks in between load and save.
        other = store.load_worker_state("c1")
        store.save_worker_state(other)

    with pytest.raises(ConcurrentUpdateError):
        store.update_worker_state("c1", interfere, retries=2)


def test_corrupt_record_raises_and_is_skipped_in_listing(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    store = _store(tmp_path)
    store.save_worker_state(WorkerState(worker_name="w", channel_id="good"))
    (store.workers_dir / "bad.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(CorruptRecordError):
        store.load_worker_state("bad")

    with caplog.at_level("WARNING"):
        states = store.list_worker_states()

    assert [state.channel_id for state in states] == ["good"]
    assert "Skipping corrupt record" in caplog.text


def test_writes_leave_no_temporary_files(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_worker_state(WorkerState(worker_name="w", channel_id="c1"))

    assert sorted(path.name for path in store.workers_dir.iterdir()) == ["c1.json"]
