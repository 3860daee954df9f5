"""File-backed persistence for workflows, executions and execution logs.

Everything lives under WORKFLOW_STATE_PATH:

    workflows.json         list of WorkflowRecord
    executions.json        list of ExecutionRecord
    logs/<execution>.jsonl one ExecutionEvent per line

Each store serialises access with a lock and writes through a temp file so a
crash never leaves half-written JSON behind. This is enough for a single
service replica; several replicas would need a shared database.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from tas_workflow_builder.errors import ExecutionNotFound, WorkflowAlreadyExists, WorkflowNotFound
from tas_workflow_builder.workflow.definition import WorkflowDefinition
from tas_workflow_builder.workflow.events import ExecutionEvent
from tas_workflow_builder.workflow.executor import StepRecord
from tas_workflow_builder.workflow.state_machine import ExecutionStatus

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class WorkflowRecord(BaseModel):
    id: str
    name: str
    space: str
    description: str = ""
    revision: int = 1
    definition: dict[str, Any]
    created_at: str
    updated_at: str

    def to_definition(self) -> WorkflowDefinition:
        return WorkflowDefinition.model_validate(self.definition)


class ExecutionRecord(BaseModel):
    id: str
    workflow_id: str
    workflow_name: str
    space: str
    backend: str = "local"
    status: ExecutionStatus = ExecutionStatus.PENDING
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    steps: dict[str, StepRecord] = Field(default_factory=dict)
    error: str | None = None
    argo_workflow_name: str | None = None
    created_at: str
    started_at: str | None = None
    finished_at: str | None = None
    # Definition as it was when the execution started.
    definition: dict[str, Any] | None = None


def _atomic_write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def _load_json_list(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning(
            "State file is not valid JSON; treating as empty", extra={"path": str(path)}
        )
        return []
    if not isinstance(raw, list):
        logger.warning(
            "State file has unexpected shape; treating as empty", extra={"path": str(path)}
        )
        return []
    return [item for item in raw if isinstance(item, dict)]


def _definition_payload(definition: WorkflowDefinition) -> dict[str, Any]:
    return definition.model_dump(mode="json", by_alias=True)


class WorkflowStore:
    """Workflow definitions, unique by (space, name)."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[WorkflowRecord]:
        return [WorkflowRecord.model_validate(item) for item in _load_json_list(self._path)]

    def _save_unlocked(self, records: list[WorkflowRecord]) -> None:
        _atomic_write_json(self._path, [r.model_dump(mode="json") for r in records])

    def list(self, *, space: str | None = None) -> list[WorkflowRecord]:
        with self._lock:
            records = self._load_unlocked()
        if space is not None:
            records = [r for r in records if r.space == space]
        return sorted(records, key=lambda r: (r.space, r.name.lower()))

    def get(self, workflow_id: str) -> WorkflowRecord:
        with self._lock:
            for record in self._load_unlocked():
                if record.id == workflow_id:
                    return record
        raise WorkflowNotFound(workflow_id)

    def find_by_name(self, space: str, name: str) -> WorkflowRecord | None:
        with self._lock:
            for record in self._load_unlocked():
                if record.space == space and record.name == name:
                    return record
        return None

    def create(self, definition: WorkflowDefinition) -> WorkflowRecord:
        with self._lock:
            records = self._load_unlocked()
            for existing in records:
                if existing.space == definition.space and existing.name == definition.name:
                    raise WorkflowAlreadyExists(
                        space=definition.space, name=definition.name, existing_id=existing.id
                    )
            now = _utc_iso_now()
            record = WorkflowRecord(
                id=uuid.uuid4().hex,
                name=definition.name,
                space=definition.space,
                description=definition.description,
                definition=_definition_payload(definition),
                created_at=now,
                updated_at=now,
            )
            records.append(record)
            self._save_unlocked(records)
            return record

    def update(self, workflow_id: str, definition: WorkflowDefinition) -> WorkflowRecord:
        with self._lock:
            records = self._load_unlocked()
            for idx, existing in enumerate(records):
                if existing.id != workflow_id:
                    continue
                for other in records:
                    if (
                        other.id != workflow_id
                        and other.space == definition.space
                        and other.name == definition.name
                    ):
                        raise WorkflowAlreadyExists(
                            space=definition.space, name=definition.name, existing_id=other.id
                        )
                updated = existing.model_copy(
                    update={
                        "name": definition.name,
                        "space": definition.space,
                        "description": definition.description,
                        "definition": _definition_payload(definition),
                        "revision": existing.revision + 1,
                        "updated_at": _utc_iso_now(),
                    }
                )
                records[idx] = updated
                self._save_unlocked(records)
                return updated
        raise WorkflowNotFound(workflow_id)

    def delete(self, workflow_id: str) -> None:
        with self._lock:
            records = self._load_unlocked()
            remaining = [r for r in records if r.id != workflow_id]
            if len(remaining) == len(records):
                raise WorkflowNotFound(workflow_id)
            self._save_unlocked(remaining)


class ExecutionStore:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[ExecutionRecord]:
        return [ExecutionRecord.model_validate(item) for item in _load_json_list(self._path)]

    def _save_unlocked(self, records: list[ExecutionRecord]) -> None:
        _atomic_write_json(self._path, [r.model_dump(mode="json") for r in records])

    def list(
        self,
        *,
        workflow_id: str | None = None,
        space: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[ExecutionRecord]:
        with self._lock:
            records = self._load_unlocked()
        if workflow_id is not None:
            records = [r for r in records if r.workflow_id == workflow_id]
        if space is not None:
            records = [r for r in records if r.space == space]
        if status is not None:
            records = [r for r in records if r.status == status]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def get(self, execution_id: str) -> ExecutionRecord:
        with self._lock:
            for record in self._load_unlocked():
                if record.id == execution_id:
                    return record
        raise ExecutionNotFound(execution_id)

    def create(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            records = self._load_unlocked()
            records.append(record)
            self._save_unlocked(records)
            return record

    def update(self, execution_id: str, **updates: object) -> ExecutionRecord:
        with self._lock:
            records = self._load_unlocked()
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                merged = record.model_copy(update=updates)
                records[idx] = merged
                self._save_unlocked(records)
                return merged
        raise ExecutionNotFound(execution_id)

    def mutate(
        self, execution_id: str, fn: Callable[[ExecutionRecord], ExecutionRecord]
    ) -> ExecutionRecord:
        """Read-modify-write under the store lock."""

        with self._lock:
            records = self._load_unlocked()
            for idx, record in enumerate(records):
                if record.id != execution_id:
                    continue
                records[idx] = fn(record)
                self._save_unlocked(records)
                return records[idx]
        raise ExecutionNotFound(execution_id)


class ExecutionLogStore:
    """Append-only JSON-lines log per execution."""

    def __init__(self, directory: Path) -> None:
        self._dir = directory
        self._lock = threading.Lock()

    def _path(self, execution_id: str) -> Path:
        # Ids are generated hex strings; refuse anything that could escape the directory.
        if not execution_id or not execution_id.isalnum():
            raise ExecutionNotFound(execution_id)
        return self._dir / f"{execution_id}.jsonl"

    def append(self, execution_id: str, event: ExecutionEvent) -> None:
        path = self._path(execution_id)
        line = json.dumps(event.to_json(), ensure_ascii=False, default=str)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(
        self, execution_id: str, *, since: int = 0, limit: int | None = None
    ) -> list[dict[str, Any]]:
        path = self._path(execution_id)
        if not path.exists():
            return []
        with self._lock:
            lines = path.read_text(encoding="utf-8").splitlines()
        entries: list[dict[str, Any]] = []
        for offset, line in enumerate(lines):
            if offset < since or not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            entry["offset"] = offset
            entries.append(entry)
            if limit is not None and len(entries) >= limit:
                break
        return entries
