"""Storage abstractions for ThreadPilot."""

from .chroma import ChromaEvent, ChromaStore, ChromaUnavailableError
from .models import AuditEntry, QueuedMessage, ThreadSession, TranscriptEntry, WorkerState
from .workspace import WorkspaceStore

__all__ = [
    "AuditEntry",
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "QueuedMessage",
    "ThreadSession",
    "TranscriptEntry",
    "WorkerState",
    "WorkspaceStore",
]
