"""ThreadPilot diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from threadpilot.admin import ContextCompressor, UsageAnalyzer
from threadpilot.config import ThreadPilotSettings
from threadpilot.storage import ChromaStore, ChromaUnavailableError, WorkspaceStore


def load_workspace(settings: ThreadPilotSettings) -> WorkspaceStore:
    return WorkspaceStore(settings.work_base_dir)


def load_event_log(settings: ThreadPilotSettings) -> ChromaStore:
    try:
        return ChromaStore(settings.chroma_path)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)


def cmd_threads(args: argparse.Namespace) -> None:
    store = load_workspace(ThreadPilotSettings())
    threads = store.list_threads(status=args.status)
    if args.json:
        print(json.dumps([thread.model_dump(mode="json") for thread in threads], indent=2))
        return
    for thread in threads:
        print(f"{thread.channel_id} [{thread.status}] -> {thread.repository_full_name}")


def cmd_workers(args: argparse.Namespace) -> None:
    settings = ThreadPilotSettings()
    store = load_workspace(settings)
    payload = []
    for state in store.list_worker_states():
        resume_at = None
        if state.rate_limit_timestamp is not None:
            resume_at = datetime.fromtimestamp(
                state.rate_limit_timestamp + settings.rate_limit_delay_seconds, tz=timezone.utc
            ).isoformat()
        payload.append(
            {
                "channel_id": state.channel_id,
                "worker": state.worker_name,
                "status": state.status,
                "phase": state.phase,
                "session_id": state.session_id,
                "rate_limit_timestamp": state.rate_limit_timestamp,
                "resume_at": resume_at,
                "auto_resume": state.auto_resume_after_rate_limit,
                "queued_messages": len(state.queued_messages),
                "revision": state.revision,
            }
        )
    print(json.dumps(payload, indent=2))


def cmd_audit(args: argparse.Namespace) -> None:
    event_log = load_event_log(ThreadPilotSettings())
    day = args.day or datetime.now(timezone.utc).date().isoformat()
    try:
        entries = event_log.fetch_audit(day, channel_id=args.channel_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    if args.limit is not None and args.limit > 0:
        entries = entries[-args.limit :]
    print(json.dumps([entry.model_dump(mode="json") for entry in entries], indent=2))


def cmd_transcript(args: argparse.Namespace) -> None:
    event_log = load_event_log(ThreadPilotSettings())
    try:
        entries = event_log.fetch_transcript(args.channel_id, args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    for entry in entries:
        print(f"[{entry.timestamp.isoformat()}] {entry.role}: {entry.content}")


def cmd_search(args: argparse.Namespace) -> None:
    event_log = load_event_log(ThreadPilotSettings())
    filters = {"channel_id": args.channel_id} if args.channel_id else None
    try:
        events = event_log.search_events(args.query, filters=filters, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    for event in events:
        print(f"[{event.timestamp.isoformat()}] {event.stream} {event.event_type}: {event.document}")


def cmd_compress(args: argparse.Namespace) -> None:
    settings = ThreadPilotSettings()
    event_log = load_event_log(settings)
    try:
        entries = event_log.fetch_transcript(args.channel_id, args.session_id)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    compressor = ContextCompressor(
        threshold=args.threshold if args.threshold is not None else settings.compress_threshold,
        keep_recent=args.keep if args.keep is not None else settings.compress_keep_recent,
    )
    result = compressor.compress(entries)
    print(
        f"tokens: {result.original_tokens} -> {result.compressed_tokens} "
        f"(ratio {result.ratio:.2f}, compressed: {'yes' if result.compressed else 'no'})"
    )
    if args.show:
        for entry in result.entries:
            print(f"[{entry.timestamp.isoformat()}] {entry.role}: {entry.content}")


def _days(value: str) -> int:
    days = int(value)
    if not 1 <= days <= 365:
        raise argparse.ArgumentTypeError("days must be between 1 and 365")
    return days


def cmd_usage(args: argparse.Namespace) -> None:
    settings = ThreadPilotSettings()
    analyzer = UsageAnalyzer(args.projects or settings.claude_projects_dir)
    output = analyzer.json_report(args.days) if args.format == "json" else analyzer.summary(args.days)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as handle:
            handle.write(output + "\n")
        print(f"Report saved to: {args.output}")
        return
    print(output)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="ThreadPilot diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_threads = sub.add_parser("threads", help="List thread sessions")
    p_threads.add_argument("--status", choices=["active", "archived"])
    p_threads.add_argument("--json", action="store_true", help="Output JSON")
    p_threads.set_defaults(func=cmd_threads)

    p_workers = sub.add_parser("workers", help="Show worker states including rate limits")
    p_workers.set_defaults(func=cmd_workers)

    p_audit = sub.add_parser("audit", help="Show the audit log for one UTC day")
    p_audit.add_argument("--day", help="YYYY-MM-DD, defaults to today")
    p_audit.add_argument("--channel-id")
    p_audit.add_argument("--limit", type=int, default=None, help="Show only the latest N entries")
    p_audit.set_defaults(func=cmd_audit)

    p_transcript = sub.add_parser("transcript", help="Print a session transcript")
    p_transcript.add_argument("channel_id")
    p_transcript.add_argument("session_id")
    p_transcript.set_defaults(func=cmd_transcript)

    p_search = sub.add_parser("search", help="Search audit and transcript events")
    p_search.add_argument("query")
    p_search.add_argument("--channel-id")
    p_search.add_argument("--limit", type=int, default=20)
    p_search.set_defaults(func=cmd_search)

    p_compress = sub.add_parser("compress", help="Estimate tokens in a transcript and show its compressed form")
    p_compress.add_argument("channel_id")
    p_compress.add_argument("session_id")
    p_compress.add_argument("--threshold", type=int, default=None, help="Token threshold, defaults to settings")
    p_compress.add_argument("--keep", type=int, default=None, help="Recent entries kept verbatim")
    p_compress.add_argument("--show", action="store_true", help="Print the compressed transcript")
    p_compress.set_defaults(func=cmd_compress)

    p_usage = sub.add_parser("usage", help="Report CLI usage by day, project and branch")
    p_usage.add_argument("--days", type=_days, default=30)
    p_usage.add_argument("--format", choices=["summary", "json"], default="summary")
    p_usage.add_argument("--output", help="Write the report to a file instead of stdout")
    p_usage.add_argument("--projects", help="Claude projects directory, defaults to CLAUDE_PROJECTS_DIR")
    p_usage.set_defaults(func=cmd_usage)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
