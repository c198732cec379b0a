"""Session registry, rate-limit coordination and usage accounting."""

from .compressor import CompressionResult, ContextCompressor, estimate_tokens, estimate_transcript_tokens
from .rate_limit import RESUME_POLICIES, RateLimitCoordinator
from .registry import SessionRegistry
from .usage import TokenUsageInfo, TokenUsageTracker
from .usage_report import UsageAnalyzer, UsageReport

__all__ = [
    "CompressionResult",
    "ContextCompressor",
    "RESUME_POLICIES",
    "RateLimitCoordinator",
    "SessionRegistry",
    "TokenUsageInfo",
    "TokenUsageTracker",
    "UsageAnalyzer",
    "UsageReport",
    "estimate_tokens",
    "estimate_transcript_tokens",
]
