"""Error taxonomy shared by the registry, workers and storage."""

from __future__ import annotations


class ThreadPilotError(RuntimeError):
    """Base class for engine errors. ``kind`` tags the failure category."""

    kind = "error"


class WorkerNotFoundError(ThreadPilotError):
    """Raised when no worker is registered for a channel."""

    kind = "not_found"

    def __init__(self, channel_id: str) -> None:
        super().__init__(f"No worker registered for channel {channel_id}")
        self.channel_id = channel_id


class WorkerAlreadyExistsError(ThreadPilotError):
    """Raised when a second worker is requested for an active channel."""

    kind = "already_active"

    def __init__(self, channel_id: str) -> None:
        super().__init__(f"A worker is already registered for channel {channel_id}")
        self.channel_id = channel_id


class WorkerBusyError(ThreadPilotError):
    """Raised when a worker receives a message while an invocation is in flight."""

    kind = "busy"

    def __init__(self, channel_id: str, phase: str) -> None:
        super().__init__(f"Worker for channel {channel_id} is busy (phase: {phase})")
        self.channel_id = channel_id
        self.phase = phase


class RunnerNotFoundError(ThreadPilotError):
    """Raised when the CLI executable cannot be located."""

    kind = "runner_not_found"


class SpawnError(ThreadPilotError):
    """Raised when the CLI subprocess could not be started."""

    kind = "spawn_failure"


class StreamError(ThreadPilotError):
    """Raised when reading subprocess output fails or is interrupted."""

    kind = "stream_failure"

    def __init__(self, message: str, *, cancelled: bool = False) -> None:
        super().__init__(message)
        self.cancelled = cancelled


class PersistenceError(ThreadPilotError):
    """Raised when a record cannot be written or read."""

    kind = "persistence_failure"


class CorruptRecordError(PersistenceError):
    """Raised when an on-disk record exists but cannot be decoded."""


class ConcurrentUpdateError(PersistenceError):
    """Raised when a compare-and-swap update keeps losing to another writer."""


__all__ = [
    "ConcurrentUpdateError",
    "CorruptRecordError",
    "PersistenceError",
    "RunnerNotFoundError",
    "SpawnError",
    "StreamError",
    "ThreadPilotError",
    "WorkerAlreadyExistsError",
    "WorkerBusyError",
    "WorkerNotFoundError",
]
