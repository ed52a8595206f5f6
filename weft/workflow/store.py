"""Persistence adapters for workflow definitions and execution state.

The JSON adapters keep one file per object under a directory, written
atomically via a temp file and rename. Ids become file names, so they are
checked against a strict pattern before touching the filesystem. The
in-memory adapters deep-copy ``to_dict()`` snapshots on the way in and out,
so callers never share mutable state with the store.
"""

from __future__ import annotations

import copy
import json
import re
from pathlib import Path
from typing import Any

from loguru import logger

from weft.workflow.models import WorkflowDef, WorkflowExecution

_SAFE_NAME_RE = re.compile(r"^[\w][\w.-]*$")


def _is_safe_name(name: str) -> bool:
    return bool(name) and ".." not in name and bool(_SAFE_NAME_RE.match(name))


class _JsonDirectory:
    def __init__(self, directory: Path, label: str) -> None:
        self._dir = Path(directory).expanduser()
        self._dir.mkdir(parents=True, exist_ok=True)
        self._label = label

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, name: str) -> Path | None:
        if not _is_safe_name(name):
            return None
        return self._dir / f"{name}.json"

    def write(self, name: str, data: dict[str, Any]) -> Path:
        path = self.path_for(name)
        if path is None:
            raise ValueError(f"Invalid {self._label} name: {name!r}")
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        tmp.rename(path)
        return path

    def read(self, name: str) -> dict[str, Any] | None:
        path = self.path_for(name)
        if path is None or not path.exists():
            return None
        return self._read_path(path)

    def read_all(self) -> list[dict[str, Any]]:
        items = []
        for path in sorted(self._dir.glob("*.json")):
            data = self._read_path(path)
            if data is not None:
                items.append(data)
        return items

    def remove(self, name: str) -> bool:
        path = self.path_for(name)
        if path is None or not path.exists():
            return False
        path.unlink()
        return True

    def _read_path(self, path: Path) -> dict[str, Any] | None:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Skipping unreadable {} file {}: {}", self._label, path.name, exc)
            return None


class JsonWorkflowRepository:
    """Workflow definitions as ``<dir>/<workflow_id>.json``."""

    def __init__(self, directory: Path | str) -> None:
        self._files = _JsonDirectory(Path(directory), "workflow")

    def save(self, workflow: WorkflowDef) -> None:
        path = self._files.write(workflow.id, workflow.to_dict())
        logger.debug("Saved workflow '{}' to {}", workflow.id, path)

    def get(self, workflow_id: str) -> WorkflowDef | None:
        data = self._files.read(workflow_id)
        return WorkflowDef.from_dict(data) if data is not None else None

    def list(self) -> list[WorkflowDef]:
        workflows = []
        for data in self._files.read_all():
            try:
                workflows.append(WorkflowDef.from_dict(data))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed workflow definition: {}", exc)
        return workflows

    def delete(self, workflow_id: str) -> bool:
        return self._files.remove(workflow_id)


class JsonExecutionStore:
    """Execution snapshots as ``<dir>/<execution_id>.json``."""

    def __init__(self, directory: Path | str) -> None:
        self._files = _JsonDirectory(Path(directory), "execution")

    def save(self, execution: WorkflowExecution) -> None:
        self._files.write(execution.id, execution.to_dict())

    def load(self, execution_id: str) -> WorkflowExecution | None:
        data = self._files.read(execution_id)
        return WorkflowExecution.from_dict(data) if data is not None else None

    def list(self, workflow_id: str | None = None) -> list[WorkflowExecution]:
        executions = []
        for data in self._files.read_all():
            if workflow_id is not None and data.get("workflow_id") != workflow_id:
                continue
            try:
                executions.append(WorkflowExecution.from_dict(data))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed execution snapshot: {}", exc)
        return executions


class InMemoryWorkflowRepository:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def save(self, workflow: WorkflowDef) -> None:
        self._data[workflow.id] = copy.deepcopy(workflow.to_dict())

    def get(self, workflow_id: str) -> WorkflowDef | None:
        data = self._data.get(workflow_id)
        return WorkflowDef.from_dict(copy.deepcopy(data)) if data is not None else None

    def list(self) -> list[WorkflowDef]:
        return [WorkflowDef.from_dict(copy.deepcopy(d)) for d in self._data.values()]

    def delete(self, workflow_id: str) -> bool:
        return self._data.pop(workflow_id, None) is not None


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def save(self, execution: WorkflowExecution) -> None:
        self._data[execution.id] = copy.deepcopy(execution.to_dict())

    def load(self, execution_id: str) -> WorkflowExecution | None:
        data = self._data.get(execution_id)
        return WorkflowExecution.from_dict(copy.deepcopy(data)) if data is not None else None

    def list(self, workflow_id: str | None = None) -> list[WorkflowExecution]:
        return [
            WorkflowExecution.from_dict(copy.deepcopy(d))
            for d in self._data.values()
            if workflow_id is None or d["workflow_id"] == workflow_id
        ]
