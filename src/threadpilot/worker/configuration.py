"""CLI argument and environment construction for worker invocations."""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from ..config import ThreadPilotSettings
from ..profiles import WorkerProfile


@dataclass(slots=True)
class WorkerConfiguration:
    append_system_prompt: str | None = None
    skip_permissions: bool = True
    max_output_tokens: int = 25000
    model: str | None = None
    extra_args: list[str] = field(default_factory=list)

    @classmethod
    def from_settings(cls, settings: ThreadPilotSettings) -> "WorkerConfiguration":
        return cls(
            append_system_prompt=settings.append_system_prompt,
            skip_permissions=settings.skip_permissions,
            max_output_tokens=settings.max_output_tokens,
        )

    def with_profile(self, profile: WorkerProfile | None) -> "WorkerConfiguration":
        """Return a copy with the profile's overrides applied."""

        if profile is None:
            return replace(self, extra_args=list(self.extra_args))
        return replace(
            self,
            append_system_prompt=profile.append_system_prompt or self.append_system_prompt,
            skip_permissions=(
                self.skip_permissions if profile.skip_permissions is None else profile.skip_permissions
            ),
            max_output_tokens=profile.max_output_tokens or self.max_output_tokens,
            model=profile.model or self.model,
            extra_args=[*self.extra_args, *profile.extra_args],
        )

    def build_args(self, prompt: str, *, session_id: str | None = None, plan_mode: bool = False) -> list[str]:
        # stream-json output requires --verbose in print mode.
        args = ["-p", prompt, "--output-format", "stream-json", "--verbose"]
        if session_id:
            args.extend(["--resume", session_id])
        if plan_mode:
            args.extend(["--permission-mode", "plan"])
        elif self.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if self.append_system_prompt:
            args.append(f"--append-system-prompt={self.append_system_prompt}")
        if self.model:
            args.extend(["--model", self.model])
        args.extend(self.extra_args)
        return args

    def build_env(self) -> dict[str, str]:
        return {"CLAUDE_CODE_MAX_OUTPUT_TOKENS": str(self.max_output_tokens)}


__all__ = ["WorkerConfiguration"]
