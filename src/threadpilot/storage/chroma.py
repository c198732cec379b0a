"""Chroma-based append-only event log for audit entries and transcripts."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import AuditEntry, TranscriptEntry


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by ThreadPilot."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    """Protocol for the minimal Chroma client API used by ThreadPilot."""

    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class ChromaEvent:
    """Represents a stored event in Chroma."""

    id: str
    stream: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _events(result: dict[str, list[Any]]) -> list[ChromaEvent]:
    events = [
        ChromaEvent(
            id=event_id,
            stream=metadata.get("stream", ""),
            event_type=metadata.get("event_type", ""),
            document=document,
            metadata=metadata,
            timestamp=datetime.fromisoformat(metadata["timestamp"]),
        )
        for event_id, document, metadata in zip(
            result.get("ids", []), result.get("documents", []), result.get("metadatas", [])
        )
    ]
    events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
    return events


def audit_stream(day: str) -> str:
    return f"audit::{day}"


def transcript_stream(channel_id: str, session_id: str) -> str:
    return f"transcript::{channel_id}::{session_id}"


class ChromaStore:
    """Append-only event streams persisted via ChromaDB.

    Audit entries are grouped into one stream per UTC day; transcripts into
    one stream per (channel, CLI session).
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "threadpilot_events",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; audit and transcript logs are disabled"
            ) from exc

        try:
            return chromadb.PersistentClient(path=str(self._path))
        except Exception as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(f"Failed to open Chroma at {self._path}: {exc}") from exc

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> ChromaEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream] = self._counters[stream] + 1
        event_id = f"{stream}:{uuid.uuid4().hex}"
        timestamp = timestamp or self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "stream": stream,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        if metadata:
            # Chroma rejects None metadata values.
            record_metadata.update({key: value for key, value in metadata.items() if value is not None})

        collection.add(
            documents=[document],
            metadatas=[record_metadata],
            ids=[event_id],
        )

        return ChromaEvent(
            id=event_id,
            stream=stream,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def fetch_stream(self, stream: str) -> list[ChromaEvent]:
        return _events(self._ensure_collection().get(where={"stream": stream}))

    def append_audit(self, entry: AuditEntry) -> ChromaEvent:
        day = entry.timestamp.astimezone(timezone.utc).date().isoformat()
        return self.record_event(
            stream=audit_stream(day),
            event_type=entry.action,
            body=entry.model_dump(mode="json"),
            metadata={"channel_id": entry.channel_id, "day": day},
            timestamp=entry.timestamp,
        )

    def fetch_audit(self, day: str, *, channel_id: str | None = None) -> list[AuditEntry]:
        entries = [AuditEntry.model_validate_json(event.document) for event in self.fetch_stream(audit_stream(day))]
        if channel_id is not None:
            entries = [entry for entry in entries if entry.channel_id == channel_id]
        return entries

    def append_transcript(self, entry: TranscriptEntry) -> ChromaEvent:
        return self.record_event(
            stream=transcript_stream(entry.channel_id, entry.session_id),
            event_type=f"transcript_{entry.role}",
            body=entry.model_dump(mode="json"),
            metadata={"channel_id": entry.channel_id, "session_id": entry.session_id, "role": entry.role},
            timestamp=entry.timestamp,
        )

    def fetch_transcript(self, channel_id: str, session_id: str) -> list[TranscriptEntry]:
        return [
            TranscriptEntry.model_validate_json(event.document)
            for event in self.fetch_stream(transcript_stream(channel_id, session_id))
        ]

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[ChromaEvent]:
        collection = self._ensure_collection()
        events = _events(collection.get(where=filters, limit=None if query else limit))
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = [
    "ChromaEvent",
    "ChromaStore",
    "ChromaUnavailableError",
    "audit_stream",
    "transcript_stream",
]
