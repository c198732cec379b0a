"""Environment for Claude CLI child processes."""

from __future__ import annotations

import os
from typing import Mapping

# Interpreter settings of this server and markers of an enclosing Claude
# session must not reach the child.
_BLOCKED = frozenset(
    {
        "PYTHONHOME",
        "PYTHONPATH",
        "VIRTUAL_ENV",
        "PIP_RESPECT_VIRTUALENV",
        "CLAUDECODE",
        "CLAUDE_CODE_ENTRYPOINT",
    }
)


def child_environment(
    overrides: Mapping[str, str] | None = None,
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    inherited = os.environ if base is None else base
    env = {key: value for key, value in inherited.items() if key not in _BLOCKED}
    env.update(overrides or {})
    return env
