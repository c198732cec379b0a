"""Daily token usage accounting against a fixed base."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

TOKEN_BASE = 100_000
RESET_INTERVAL = timedelta(hours=24)


@dataclass(slots=True)
class TokenUsageInfo:
    current_usage: int
    max_tokens: int
    usage_percentage: int
    next_reset_time: datetime

    @property
    def next_reset_time_utc(self) -> str:
        return self.next_reset_time.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M")

    def as_dict(self) -> dict[str, object]:
        return {
            "current_usage": self.current_usage,
            "max_tokens": self.max_tokens,
            "usage_percentage": self.usage_percentage,
            "next_reset_time": self.next_reset_time.isoformat(),
        }


class TokenUsageTracker:
    """Accumulate input and output tokens, resetting every 24 hours.

    The first window starts at today's UTC midnight.
    """

    def __init__(
        self,
        *,
        token_base: int = TOKEN_BASE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.token_base = token_base
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._current_usage = 0
        now = self._clock()
        self._last_reset = now.replace(hour=0, minute=0, second=0, microsecond=0)

    def _check_reset(self) -> None:
        now = self._clock()
        if now - self._last_reset >= RESET_INTERVAL:
            self._current_usage = 0
            self._last_reset = now

    def add_token_usage(self, input_tokens: int, output_tokens: int) -> None:
        self._check_reset()
        self._current_usage += max(0, input_tokens) + max(0, output_tokens)

    @property
    def current_usage(self) -> int:
        self._check_reset()
        return self._current_usage

    def usage_info(self) -> TokenUsageInfo:
        self._check_reset()
        return TokenUsageInfo(
            current_usage=self._current_usage,
            max_tokens=self.token_base,
            usage_percentage=round(self._current_usage / self.token_base * 100),
            next_reset_time=self._last_reset + RESET_INTERVAL,
        )

    def usage_percentage(self) -> int:
        return self.usage_info().usage_percentage

    def status_string(self) -> str:
        info = self.usage_info()
        return f"{info.current_usage}/{info.max_tokens} ({info.usage_percentage}%) {info.next_reset_time_utc}"

    def reset(self) -> None:
        self._current_usage = 0
        self._last_reset = self._clock()


__all__ = ["TOKEN_BASE", "TokenUsageInfo", "TokenUsageTracker"]
