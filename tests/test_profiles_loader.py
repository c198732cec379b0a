import os
from pathlib import Path
import textwrap

import pytest

from threadpilot.config import ThreadPilotSettings
from threadpilot.profiles import ProfileLoadError, ProfileLoader
from threadpilot.worker import WorkerConfiguration


def write_profile(path: Path, *, title: str, model: str = "sonnet") -> None:
    path.write_text(
        textwrap.dedent(
            """
            id: reviewer
            title: {title}
            description: Careful code review
            append_system_prompt: Review only, do not edit files.
            skip_permissions: false
            max_output_tokens: 8000
            model: {model}
            extra_args:
              - --max-turns
              - 5
            """
        ).strip().format(title=title, model=model),
        encoding="utf-8",
    )


def test_loader_merges_paths(tmp_path: Path) -> None:
    base = tmp_path / "base"
    base.mkdir()
    override = tmp_path / "override"
    override.mkdir()

    write_profile(base / "reviewer.yaml", title="Base Title")
    write_profile(override / "reviewer.yml", title="Override Title", model="opus")

    loader = ProfileLoader([base, override, tmp_path / "missing"])
    profiles = loader.load_all()

    assert profiles["reviewer"].title == "Override Title"
    assert profiles["reviewer"].model == "opus"
    assert profiles["reviewer"].extra_args == ["--max-turns", "5"]
    assert loader.search_paths == [base, override]


def test_loader_handles_missing_profiles(tmp_path: Path) -> None:
    loader = ProfileLoader([tmp_path])
    assert loader.load_all() == {}


def test_loader_reports_validation_error(tmp_path: Path) -> None:
    invalid = tmp_path / "invalid"
    invalid.mkdir()
    (invalid / "broken.yaml").write_text("id: \ntitle: test", encoding="utf-8")

    loader = ProfileLoader([invalid])

    with pytest.raises(ProfileLoadError):
        loader.load_all()


def test_get_unknown_profile(tmp_path: Path) -> None:
    with pytest.raises(ProfileLoadError):
        ProfileLoader([tmp_path]).get("nope")


def test_profile_overrides_configuration(tmp_path: Path) -> None:
    write_profile(tmp_path / "reviewer.yaml", title="Reviewer")
    profile = ProfileLoader([tmp_path]).get("reviewer")
    base = WorkerConfiguration.from_settings(ThreadPilotSettings(_env_file=None))

    configured = base.with_profile(profile)
    args = configured.build_args("review this", session_id="s1")

    assert args[:5] == ["-p", "review this", "--output-format", "stream-json", "--verbose"]
    assert args[5:7] == ["--resume", "s1"]
    assert "--dangerously-skip-permissions" not in args
    assert "--append-system-prompt=Review only, do not edit files." in args
    assert args[-4:] == ["--model", "sonnet", "--max-turns", "5"]
    assert configured.build_env() == {"CLAUDE_CODE_MAX_OUTPUT_TOKENS": "8000"}
    assert base.extra_args == []


def test_plan_mode_wins_over_skip_permissions() -> None:
    args = WorkerConfiguration(skip_permissions=True).build_args("plan it", plan_mode=True)

    assert args[-2:] == ["--permission-mode", "plan"]
    assert "--dangerously-skip-permissions" not in args


def test_skip_permissions_default() -> None:
    args = WorkerConfiguration().build_args("go")

    assert args == ["-p", "go", "--output-format", "stream-json", "--verbose", "--dangerously-skip-permissions"]


def test_profile_id_defaults_to_file_stem(tmp_path: Path) -> None:
    (tmp_path / "planner.yml").write_text("title: Planner\n", encoding="utf-8")

    assert ProfileLoader([tmp_path]).get("planner").title == "Planner"


def test_loader_picks_up_edited_and_new_files(tmp_path: Path) -> None:
    path = tmp_path / "reviewer.yaml"
    write_profile(path, title="First")
    loader = ProfileLoader([tmp_path])
    assert loader.get("reviewer").title == "First"

    write_profile(path, title="Second")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))
    (tmp_path / "planner.yml").write_text("title: Planner\n", encoding="utf-8")

    profiles = loader.load_all()
    assert profiles["reviewer"].title == "Second"
    assert sorted(profiles) == ["planner", "reviewer"]


def test_search_path_created_later_is_used(tmp_path: Path) -> None:
    late = tmp_path / "late"
    loader = ProfileLoader([late])
    assert loader.load_all() == {}

    late.mkdir()
    (late / "ops.yaml").write_text("title: Ops\n", encoding="utf-8")

    assert list(loader.load_all()) == ["ops"]


def test_non_mapping_profile_is_rejected(tmp_path: Path) -> None:
    (tmp_path / "list.yaml").write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ProfileLoadError, match="must contain a mapping"):
        ProfileLoader([tmp_path]).load_all()
