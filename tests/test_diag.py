from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

import threadpilot_diag
from threadpilot.storage import (
    AuditEntry,
    ChromaEvent,
    ChromaUnavailableError,
    ThreadSession,
    TranscriptEntry,
    WorkerState,
    WorkspaceStore,
)


@pytest.fixture
def work_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("WORK_BASE_DIR", str(tmp_path / "work"))
    monkeypatch.delenv("RATE_LIMIT_DELAY_SECONDS", raising=False)
    store = WorkspaceStore(tmp_path / "work")
    store.initialize()
    store.save_thread(ThreadSession(channel_id="C1", repository_full_name="acme/app"))
    store.save_thread(ThreadSession(channel_id="C2", repository_full_name="acme/old", status="archived"))
    store.save_worker_state(
        WorkerState(worker_name="worker-1", channel_id="C1", rate_limit_timestamp=1000, phase="rate_limited")
    )
    return tmp_path / "work"


class StubEventLog:
    def __init__(self) -> None:
        self.audit = [
            AuditEntry(channel_id="C1", action="rate_limit_detected"),
            AuditEntry(channel_id="C1", action="message_queued"),
        ]
        self.requests: list[tuple] = []

    def fetch_audit(self, day: str, *, channel_id: str | None = None) -> list[AuditEntry]:
        self.requests.append((day, channel_id))
        return self.audit

    def search_events(self, query, *, filters=None, limit=None):
        self.requests.append((query, filters, limit))
        return [
            ChromaEvent(
                id="audit::2025-01-01:1",
                stream="audit::2025-01-01",
                event_type="rate_limit_detected",
                document="{}",
                metadata={},
                timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )
        ]

    def fetch_transcript(self, channel_id: str, session_id: str) -> list[TranscriptEntry]:
        return [
            TranscriptEntry(
                channel_id=channel_id,
                session_id=session_id,
                role="user",
                content="hello",
                timestamp=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )
        ]


def test_threads_lists_sessions(work_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    threadpilot_diag.main(["threads", "--status", "active"])

    assert capsys.readouterr().out.strip() == "C1 [active] -> acme/app"


def test_threads_json(work_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    threadpilot_diag.main(["threads", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert sorted(item["channel_id"] for item in payload) == ["C1", "C2"]


def test_workers_reports_resume_time(work_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
    threadpilot_diag.main(["workers"])

    payload = json.loads(capsys.readouterr().out)
    assert payload[0]["channel_id"] == "C1"
    assert payload[0]["phase"] == "rate_limited"
    assert payload[0]["resume_at"] == "1970-01-01T00:21:40+00:00"
    assert payload[0]["queued_messages"] == 0


def test_audit_limits_entries(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    stub = StubEventLog()
    monkeypatch.setattr(threadpilot_diag, "load_event_log", lambda settings: stub)

    threadpilot_diag.main(["audit", "--day", "2025-01-01", "--channel-id", "C1", "--limit", "1"])

    payload = json.loads(capsys.readouterr().out)
    assert [entry["action"] for entry in payload] == ["message_queued"]
    assert stub.requests == [("2025-01-01", "C1")]


def test_transcript_prints_entries(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(threadpilot_diag, "load_event_log", lambda settings: StubEventLog())

    threadpilot_diag.main(["transcript", "C1", "sess-1"])

    assert capsys.readouterr().out.strip() == "[2025-01-01T00:00:00+00:00] user: hello"


def test_missing_chroma_exits(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    def unavailable(*args, **kwargs):
        raise ChromaUnavailableError("chromadb is not installed")

    monkeypatch.setattr(threadpilot_diag, "ChromaStore", unavailable)

    with pytest.raises(SystemExit) as excinfo:
        threadpilot_diag.main(["audit"])

    assert excinfo.value.code == 1
    assert "Chroma unavailable" in capsys.readouterr().out


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    threadpilot_diag.main([])

    assert "ThreadPilot diagnostics" in capsys.readouterr().out


def test_search_prints_matching_events(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    stub = StubEventLog()
    monkeypatch.setattr(threadpilot_diag, "load_event_log", lambda settings: stub)

    threadpilot_diag.main(["search", "rate_limit", "--channel-id", "C1"])

    assert capsys.readouterr().out.strip() == (
        "[2025-01-01T00:00:00+00:00] audit::2025-01-01 rate_limit_detected: {}"
    )
    assert stub.requests == [("rate_limit", {"channel_id": "C1"}, 20)]


def test_compress_reports_token_estimate(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(threadpilot_diag, "load_event_log", lambda settings: StubEventLog())

    threadpilot_diag.main(["compress", "C1", "sess-1"])

    assert capsys.readouterr().out.strip() == "tokens: 2 -> 2 (ratio 1.00, compressed: no)"


def test_compress_shows_folded_transcript(work_dir: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.setattr(threadpilot_diag, "load_event_log", lambda settings: StubEventLog())

    threadpilot_diag.main(["compress", "C1", "sess-1", "--threshold", "0", "--keep", "0", "--show"])

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].endswith("compressed: yes)")
    assert lines[1] == "[2025-01-01T00:00:00+00:00] assistant: [Context compressed] Summary of 1 earlier entries:"
    assert lines[2] == "User requests: hello"


def _usage_log(projects: Path) -> None:
    session = projects / "-work-app" / "sess-1.jsonl"
    session.parent.mkdir(parents=True)
    records = [
        {"type": "user", "timestamp": "2025-01-03T09:00:00Z", "cwd": "/work/repositories/acme/app"},
        {"type": "assistant", "timestamp": "2025-01-03T09:00:01Z", "message": {"usage": {"input_tokens": 42}}},
    ]
    session.write_text("\n".join(json.dumps(record) for record in records), encoding="utf-8")


def test_usage_json_report(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _usage_log(tmp_path / "projects")

    threadpilot_diag.main(["usage", "--projects", str(tmp_path / "projects"), "--format", "json", "--days", "7"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["days"] == 7
    assert payload["total_sessions"] == 1
    assert payload["tokens"]["input_tokens"] == 42
    assert payload["top_projects"][0]["name"] == "acme/app"


def test_usage_summary_written_to_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    _usage_log(tmp_path / "projects")
    monkeypatch.setenv("CLAUDE_PROJECTS_DIR", str(tmp_path / "projects"))
    output = tmp_path / "report.txt"

    threadpilot_diag.main(["usage", "--output", str(output)])

    assert capsys.readouterr().out.strip() == f"Report saved to: {output}"
    report = output.read_text(encoding="utf-8")
    assert report.startswith("Claude usage summary (last 30 days)")
    assert "Top project: acme/app" in report


def test_usage_rejects_out_of_range_days(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        threadpilot_diag.main(["usage", "--days", "0"])

    assert excinfo.value.code == 2
    assert "days must be between 1 and 365" in capsys.readouterr().err
