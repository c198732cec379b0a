from __future__ import annotations

from threadpilot.stream import MessageFormatter, strip_control_sequences
from threadpilot.stream.formatter import TOOL_ICONS, TRUNCATION_MARKER


def test_strip_control_sequences_keeps_newlines_and_tabs() -> None:
    raw = "\x1b[31mred\x1b[0m\tcol\nnext\x07\x00line"

    assert strip_control_sequences(raw) == "red\tcol\nnextline"


def test_finalize_truncates_with_marker() -> None:
    formatter = MessageFormatter(max_length=50, truncate_length=40)

    assert formatter.finalize("short") == "short"
    result = formatter.finalize("x" * 60)
    assert result == "x" * 40 + TRUNCATION_MARKER


def test_short_tool_result_is_shown_in_full() -> None:
    formatter = MessageFormatter()

    rendered = formatter.format_tool_result("all good")

    assert rendered == "✅ ```\nall good\n```"


def test_error_tool_result_prefix() -> None:
    rendered = MessageFormatter().format_tool_result([{"type": "text", "text": "nope"}], is_error=True)

    assert rendered.startswith("❌ ")
    assert "nope" in rendered


def test_medium_tool_result_keeps_head_and_tail() -> None:
    lines = [f"line {index:03d} " + "." * 20 for index in range(40)]
    text = "\n".join(lines)
    assert 500 <= len(text) <= 2000

    rendered = MessageFormatter().format_tool_result(text)

    assert "line 000" in rendered
    assert "line 009" in rendered
    assert "line 010" not in rendered
    assert "(25 lines omitted)" in rendered
    assert "line 039" in rendered


def test_long_tool_result_prioritizes_error_lines() -> None:
    lines = [f"ok line {index}" + " " * 30 for index in range(200)]
    lines[100] = "FATAL: disk is full"
    text = "\n".join(lines)
    assert len(text) > 2000

    rendered = MessageFormatter().format_tool_result(text)

    assert "FATAL: disk is full" in rendered
    assert "ok line 0" in rendered
    assert "ok line 199" in rendered
    assert "ok line 50 " not in rendered
    assert "(200 lines" in rendered


def test_tool_use_rendering() -> None:
    formatter = MessageFormatter()

    assert formatter.format_tool_use("Bash", {"command": "pytest -q"}) == "⚡ **Bash**: pytest -q"
    assert formatter.format_tool_use("Read", {"file_path": "/a/b.py"}) == "📖 **Read**: /a/b.py"
    assert formatter.format_tool_use("Mystery", {}) == "🛠️ **Mystery**"


def test_todo_list_rendering() -> None:
    rendered = MessageFormatter().format_tool_use(
        "TodoWrite",
        {
            "todos": [
                {"content": "write tests", "status": "completed"},
                {"content": "ship", "status": "in_progress"},
                {"content": "celebrate", "status": "pending"},
            ]
        },
    )

    assert rendered.splitlines() == ["📝 **TodoWrite**", "✅ write tests", "🔄 ship", "⬜ celebrate"]


def test_format_content_items_skips_unknown_types() -> None:
    items = [
        {"type": "text", "text": "  hello  "},
        {"type": "thinking", "thinking": "hmm"},
        {"type": "tool_use", "name": "Grep", "input": {"pattern": "TODO"}},
    ]

    assert MessageFormatter().format_content_items(items) == ["hello", "🔍 **Grep**: TODO"]


def test_tool_use_with_non_mapping_input_renders_name_only() -> None:
    formatter = MessageFormatter()

    assert formatter.format_tool_use("Bash", "ls") == "⚡ **Bash**"
    rendered = formatter.format_content_items(
        [
            {"type": "tool_use", "name": "TodoWrite", "input": ["write tests"]},
            "not an item",
            {"type": "tool_use", "name": "Read", "input": None},
            {"type": "text", "text": "still here"},
        ]
    )
    assert rendered == [f"{TOOL_ICONS['TodoWrite']} **TodoWrite**", f"{TOOL_ICONS['Read']} **Read**", "still here"]
