"""Worker profile discovery."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import WorkerProfile

logger = logging.getLogger(__name__)

_SUFFIXES = (".yml", ".yaml")


class ProfileLoadError(RuntimeError):
    """Raised when a profile is unknown or a profile file cannot be used."""


class ProfileLoader:
    """Read worker profiles from YAML files in a list of directories.

    Directories are scanned in order and a later directory wins when two files
    define the same id. A file without an ``id`` is named after its stem.
    Parsed profiles are reused until a profile file is added, removed or
    modified, so threads pick up edits without a restart.
    """

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        self._configured = [Path(path) for path in (search_paths or [])]
        self._fingerprint: tuple[tuple[str, int], ...] | None = None
        self._profiles: dict[str, WorkerProfile] = {}

    @property
    def search_paths(self) -> list[Path]:
        """Configured directories that currently exist."""

        return [path for path in self._configured if path.is_dir()]

    def _profile_files(self) -> list[Path]:
        files: list[Path] = []
        for base in self.search_paths:
            files.extend(sorted(path for path in base.iterdir() if path.suffix in _SUFFIXES and path.is_file()))
        return files

    def _read(self, path: Path) -> WorkerProfile | None:
        try:
            document = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ProfileLoadError(f"Failed to read {path}: {exc}") from exc
        if document is None:
            return None
        if not isinstance(document, dict):
            raise ProfileLoadError(f"Profile file {path} must contain a mapping")
        document.setdefault("id", path.stem)
        try:
            return WorkerProfile.model_validate(document)
        except ValidationError as exc:
            raise ProfileLoadError(f"Profile validation error in {path}: {exc}") from exc

    def load_all(self) -> dict[str, WorkerProfile]:
        files = self._profile_files()
        fingerprint = tuple((str(path), path.stat().st_mtime_ns) for path in files)
        if fingerprint == self._fingerprint:
            return dict(self._profiles)

        profiles: dict[str, WorkerProfile] = {}
        errors: list[str] = []
        for path in files:
            try:
                profile = self._read(path)
            except ProfileLoadError as exc:
                errors.append(str(exc))
                continue
            if profile is None:
                continue
            if profile.id in profiles:
                logger.debug("Profile overridden", extra={"profile_id": profile.id, "path": str(path)})
            profiles[profile.id] = profile
        if errors:
            raise ProfileLoadError("; ".join(errors))

        self._fingerprint = fingerprint
        self._profiles = profiles
        logger.debug("Profiles loaded", extra={"count": len(profiles), "files": len(files)})
        return dict(profiles)

    def get(self, profile_id: str) -> WorkerProfile:
        try:
            return self.load_all()[profile_id]
        except KeyError:
            raise ProfileLoadError(f"Profile '{profile_id}' not found in search paths") from None


__all__ = ["ProfileLoadError", "ProfileLoader", "WorkerProfile"]
