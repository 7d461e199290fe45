from __future__ import annotations

import copy
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .logging import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    name: str


@dataclass(frozen=True, slots=True)
class Project:
    name: str
    config: Mapping[str, Any] = field(default_factory=dict)


class ProjectService(Protocol):
    def list_projects(self) -> list[ProjectSummary]: ...

    def get_project(self, name: str) -> Project | None: ...

    def update_project_config(self, name: str, config: Mapping[str, Any]) -> None: ...


class ProjectNotFoundError(LookupError):
    pass


def atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(
        payload,
        ensure_ascii=True,
        sort_keys=True,
        indent=2,
    )
    tmp_path = path.with_suffix(f"{path.suffix}.tmp")
    tmp_path.write_text(f"{data}\n", encoding="utf-8")
    os.replace(tmp_path, path)


def read_versioned_json(path: Path, *, section: str) -> dict[str, Any] | None:
    try:
        raw = path.read_text(encoding="utf-8")
        payload = json.loads(raw)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning(
            "state.load_failed",
            path=str(path),
            error=str(exc),
            error_type=exc.__class__.__name__,
        )
        return None
    if not isinstance(payload, dict) or payload.get("version") != STATE_VERSION:
        logger.warning(
            "state.version_mismatch",
            path=str(path),
            version=payload.get("version") if isinstance(payload, dict) else None,
            expected=STATE_VERSION,
        )
        return None
    entries = payload.get(section)
    return entries if isinstance(entries, dict) else None


class JsonProjectStore:
    """Project configurations kept in one JSON file.

    The file is re-read whenever its mtime changes, so edits made by another
    process (or by hand) are picked up without a restart.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._loaded = False
        self._mtime_ns: int | None = None
        self._projects: dict[str, dict[str, Any]] = {}

    @property
    def path(self) -> Path:
        return self._path

    def _stat_mtime_ns(self) -> int | None:
        try:
            return self._path.stat().st_mtime_ns
        except FileNotFoundError:
            return None

    def _load(self) -> None:
        self._loaded = True
        self._mtime_ns = self._stat_mtime_ns()
        entries = read_versioned_json(self._path, section="projects")
        parsed: dict[str, dict[str, Any]] = {}
        for name, entry in (entries or {}).items():
            if not isinstance(name, str) or not isinstance(entry, dict):
                continue
            config = entry.get("config")
            parsed[name] = config if isinstance(config, dict) else {}
        self._projects = parsed

    def _reload_if_needed(self) -> None:
        current = self._stat_mtime_ns()
        if self._loaded and current == self._mtime_ns:
            return
        self._load()

    def _save(self, projects: dict[str, dict[str, Any]]) -> None:
        payload = {
            "version": STATE_VERSION,
            "projects": {
                name: {"config": config} for name, config in projects.items()
            },
        }
        atomic_write_json(self._path, payload)
        # adopt only once the file holds the new state
        self._projects = projects
        self._mtime_ns = self._stat_mtime_ns()

    def list_projects(self) -> list[ProjectSummary]:
        self._reload_if_needed()
        return [ProjectSummary(name=name) for name in sorted(self._projects)]

    def get_project(self, name: str) -> Project | None:
        self._reload_if_needed()
        config = self._projects.get(name)
        if config is None:
            return None
        return Project(name=name, config=copy.deepcopy(config))

    def create_project(
        self, name: str, config: Mapping[str, Any] | None = None
    ) -> Project:
        self._reload_if_needed()
        if name not in self._projects:
            self._save({**self._projects, name: copy.deepcopy(dict(config or {}))})
        return Project(name=name, config=copy.deepcopy(self._projects[name]))

    def update_project_config(self, name: str, config: Mapping[str, Any]) -> None:
        self._reload_if_needed()
        if name not in self._projects:
            raise ProjectNotFoundError(name)
        self._save({**self._projects, name: copy.deepcopy(dict(config))})
