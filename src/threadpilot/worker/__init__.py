"""Per-channel workers and their invocation settings."""

from .configuration import WorkerConfiguration
from .notifications import Notification, NotificationKind, Outcome, collect
from .worker import Phase, RateLimitDetector, RateLimitSink, Worker, pattern_detector

__all__ = [
    "Notification",
    "NotificationKind",
    "Outcome",
    "Phase",
    "RateLimitDetector",
    "RateLimitSink",
    "Worker",
    "WorkerConfiguration",
    "collect",
    "pattern_detector",
]
