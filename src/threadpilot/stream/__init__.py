"""Parsing and formatting of the CLI's streaming JSON protocol."""

from .events import AssistantContent, ErrorEvent, FinalResult, SessionStarted, StreamEvent, ToolResult
from .formatter import MessageFormatter, strip_control_sequences
from .parser import StreamParser, classify_record

__all__ = [
    "AssistantContent",
    "ErrorEvent",
    "FinalResult",
    "MessageFormatter",
    "SessionStarted",
    "StreamEvent",
    "StreamParser",
    "ToolResult",
    "classify_record",
    "strip_control_sequences",
]
