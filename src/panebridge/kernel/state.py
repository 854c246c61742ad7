from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

import yaml  # type: ignore

from ..contracts.v1 import ProjectState
from ..paths import ensure_home
from ..util.fs import atomic_write_text
from ..util.time import utc_now_iso
from .instances import normalize_project_state

logger = logging.getLogger("panebridge.state")


class StateStore(ABC):
    """Project and instance state shared by the router, poller and hook server."""

    @abstractmethod
    def get_project(self, name: str) -> Optional[ProjectState]:
        pass

    @abstractmethod
    def set_project(self, project: ProjectState) -> None:
        pass

    @abstractmethod
    def remove_project(self, name: str) -> None:
        pass

    @abstractmethod
    def list_projects(self) -> List[ProjectState]:
        pass

    def update_last_active(self, name: str) -> None:
        project = self.get_project(name)
        if project is None:
            return
        self.set_project(project.model_copy(update={"last_active": utc_now_iso()}))

    def reload(self) -> None:
        """Re-read backing storage; stores without one have nothing to do."""
        return None


class YamlStateStore(StateStore):
    """State kept in ~/.panebridge/state.yaml, rewritten atomically on change."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path or (ensure_home() / "state.yaml")
        self._projects: Dict[str, ProjectState] = {}
        self.reload()

    def reload(self) -> None:
        projects: Dict[str, ProjectState] = {}
        if self.path.exists():
            doc = yaml.safe_load(self.path.read_text(encoding="utf-8")) or {}
            raw = doc.get("projects") if isinstance(doc, dict) else None
            for name, item in (raw or {}).items():
                if not isinstance(item, dict):
                    continue
                item = dict(item)
                item.setdefault("project_name", str(name))
                projects[str(name)] = normalize_project_state(ProjectState.model_validate(item))
        self._projects = projects
        logger.debug("state loaded: %d project(s)", len(projects))

    def _save(self) -> None:
        doc = {"projects": {name: p.model_dump() for name, p in self._projects.items()}}
        atomic_write_text(self.path, yaml.safe_dump(doc, allow_unicode=True, sort_keys=False))

    def get_project(self, name: str) -> Optional[ProjectState]:
        return self._projects.get(name)

    def set_project(self, project: ProjectState) -> None:
        self._projects[project.project_name] = normalize_project_state(project)
        self._save()

    def remove_project(self, name: str) -> None:
        if self._projects.pop(name, None) is not None:
            self._save()

    def list_projects(self) -> List[ProjectState]:
        return list(self._projects.values())
