"""ThreadPilot: per-channel AI CLI sessions with restart-safe rate-limit handling."""

__version__ = "0.1.0"

__all__ = ["__version__"]
