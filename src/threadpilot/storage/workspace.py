"""File-backed record store for thread sessions and worker states."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Callable, TypeVar
from urllib.parse import quote

from pydantic import BaseModel, ValidationError

from ..errors import ConcurrentUpdateError, CorruptRecordError, PersistenceError
from .models import ThreadSession, WorkerState

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)


class WorkspaceStore:
    """One JSON document per entity under ``base_dir``.

    Reads of a missing record return ``None``. A record that exists but cannot
    be decoded raises ``CorruptRecordError``. Worker states carry a revision
    number so read-modify-write updates can detect a lost update.
    """

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    @property
    def threads_dir(self) -> Path:
        return self._base_dir / "threads"

    @property
    def workers_dir(self) -> Path:
        return self._base_dir / "workers"

    def initialize(self) -> None:
        for directory in (self.threads_dir, self.workers_dir):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _file_name(channel_id: str) -> str:
        return quote(channel_id, safe="") + ".json"

    def _read(self, path: Path, model: type[RecordT]) -> RecordT | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read {path}: {exc}") from exc
        try:
            return model.model_validate_json(raw)
        except ValidationError as exc:
            raise CorruptRecordError(f"Corrupt record at {path}: {exc}") from exc

    def _write(self, path: Path, record: BaseModel) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".part")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record.model_dump_json(indent=2))
            os.replace(tmp_name, path)
        except OSError as exc:
            raise PersistenceError(f"Failed to write {path}: {exc}") from exc

    def _list(self, directory: Path, model: type[RecordT]) -> list[RecordT]:
        records: list[RecordT] = []
        if not directory.exists():
            return records
        for path in sorted(directory.glob("*.json")):
            try:
                record = self._read(path, model)
            except CorruptRecordError as exc:
                logger.warning("Skipping corrupt record", extra={"path": str(path), "error": str(exc)})
                continue
            if record is not None:
                records.append(record)
        return records

    # Thread sessions

    def load_thread(self, channel_id: str) -> ThreadSession | None:
        return self._read(self.threads_dir / self._file_name(channel_id), ThreadSession)

    def save_thread(self, thread: ThreadSession) -> None:
        self._write(self.threads_dir / self._file_name(thread.channel_id), thread)

    def list_threads(self, status: str | None = None) -> list[ThreadSession]:
        threads = self._list(self.threads_dir, ThreadSession)
        if status is not None:
            threads = [thread for thread in threads if thread.status == status]
        return threads

    # Worker states

    def load_worker_state(self, channel_id: str) -> WorkerState | None:
        return self._read(self.workers_dir / self._file_name(channel_id), WorkerState)

    def save_worker_state(self, state: WorkerState, *, expected_revision: int | None = None) -> WorkerState:
        """Persist ``state`` and bump its revision.

        When ``expected_revision`` is given the save only succeeds if the stored
        record still carries that revision.
        """

        if expected_revision is not None:
            current = self.load_worker_state(state.channel_id)
            current_revision = current.revision if current is not None else 0
            if current_revision != expected_revision:
                raise ConcurrentUpdateError(
                    f"Worker state for {state.channel_id} changed "
                    f"(expected revision {expected_revision}, found {current_revision})"
                )
        state.revision += 1
        self._write(self.workers_dir / self._file_name(state.channel_id), state)
        return state

    def update_worker_state(
        self,
        channel_id: str,
        mutate: Callable[[WorkerState], None],
        *,
        default: WorkerState | None = None,
        retries: int = 3,
    ) -> WorkerState | None:
        """Load, mutate and save a worker state as one compare-and-swap step.

        Returns ``None`` when there is no stored record and no ``default``.
        """

        for _ in range(retries):
            current = self.load_worker_state(channel_id)
            if current is None:
                if default is None:
                    return None
                current = default.model_copy(deep=True)
                current.revision = 0
            expected = current.revision
            mutate(current)
            try:
                return self.save_worker_state(current, expected_revision=expected)
            except ConcurrentUpdateError:
                logger.debug("Retrying worker state update", extra={"channel_id": channel_id})
        raise ConcurrentUpdateError(f"Gave up updating worker state for {channel_id} after {retries} attempts")

    def list_worker_states(self) -> list[WorkerState]:
        return self._list(self.workers_dir, WorkerState)


__all__ = ["WorkspaceStore"]
