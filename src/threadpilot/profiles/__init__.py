"""Worker profile loading."""

from .loader import ProfileLoadError, ProfileLoader
from .models import WorkerProfile

__all__ = ["ProfileLoadError", "ProfileLoader", "WorkerProfile"]
