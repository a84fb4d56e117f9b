from __future__ import annotations

import copy
import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from taskcore.exceptions import StoreError
from taskcore.models import Message, Task

logger = logging.getLogger(__name__)

TASK_FILES = frozenset({"plan.md", "todos.md", "comments.md"})

StoreEventKind = Literal["task", "messages", "file"]


@dataclass(frozen=True, slots=True)
class StoreEvent:
    kind: StoreEventKind
    task_id: str
    revision: int


StoreListener = Callable[[StoreEvent], None]


@dataclass(slots=True)
class _Record:
    task: Task
    messages: list[Message]
    files: dict[str, str]
    revision: int = 1
    updated_at: str = ""


class TaskStore:
    """Tasks, their messages and task files, with commit notifications.

    Without ``root`` everything lives in memory. With ``root`` each task is
    persisted as ``<root>/tasks/<task-id>.json`` inside a versioned envelope.
    Queries return copies; changes only become visible through ``commit_*``.
    """

    SCHEMA_VERSION = 1

    def __init__(self, root: Path | None = None) -> None:
        self.root = root.resolve() if root is not None else None
        self._records: dict[str, _Record] = {}
        self._listeners: list[StoreListener] = []
        if self.root is not None:
            self.tasks_dir.mkdir(parents=True, exist_ok=True)
            self._load()

    @property
    def tasks_dir(self) -> Path:
        if self.root is None:
            raise StoreError("In-memory store has no task directory.")
        return self.root / "tasks"

    @property
    def lock_file(self) -> Path:
        return self.tasks_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _task_file(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id.replace('/', '_')}.json"

    def _load(self) -> None:
        for path in sorted(self.tasks_dir.glob("*.json")):
            try:
                envelope = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable task file path=%s", path)
                continue
            record = self._record_from_envelope(envelope)
            if record is not None:
                self._records[record.task.id] = record

    def _record_from_envelope(self, envelope: Any) -> _Record | None:
        if not isinstance(envelope, dict) or not isinstance(envelope.get("data"), dict):
            return None
        data = envelope["data"]
        if not isinstance(data.get("task"), dict):
            return None
        files = data.get("files")
        return _Record(
            task=Task.from_dict(data["task"]),
            messages=[Message.from_dict(item) for item in data.get("messages", [])],
            files=dict(files) if isinstance(files, dict) else {},
            revision=int(envelope.get("revision") or 1),
            updated_at=str(envelope.get("updated_at") or self._utcnow_iso()),
        )

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        if self.root is None:
            yield
            return
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StoreError("Timed out waiting for store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _persist(self, record: _Record) -> None:
        if self.root is None:
            return
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": record.revision,
            "updated_at": record.updated_at,
            "data": {
                "task": record.task.to_dict(),
                "messages": [message.to_dict() for message in record.messages],
                "files": dict(record.files),
            },
        }
        serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
        self._task_file(record.task.id).write_text(serialized, encoding="utf-8")

    def _require(self, task_id: str) -> _Record:
        record = self._records.get(task_id)
        if record is None:
            raise StoreError(f"Unknown task: {task_id}")
        return record

    def _notify(self, kind: StoreEventKind, record: _Record) -> None:
        event = StoreEvent(kind=kind, task_id=record.task.id, revision=record.revision)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Store listener failed kind=%s task=%s", kind, event.task_id)

    def _commit(
        self,
        kind: StoreEventKind,
        task_id: str,
        apply: Callable[[_Record], None],
        expected_revision: int | None = None,
    ) -> int:
        with self._state_lock():
            record = self._require(task_id)
            if expected_revision is not None and expected_revision != record.revision:
                raise StoreError(f"Concurrent update detected for task '{task_id}'.")
            apply(record)
            record.revision += 1
            record.updated_at = self._utcnow_iso()
            record.task.updated_at = record.updated_at
            self._persist(record)
        self._notify(kind, record)
        return record.revision

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def create_task(self, task: Task, messages: list[Message] | None = None) -> Task:
        with self._state_lock():
            if task.id in self._records:
                raise StoreError(f"Task already exists: {task.id}")
            record = _Record(
                task=copy.deepcopy(task),
                messages=copy.deepcopy(messages or []),
                files={},
                updated_at=self._utcnow_iso(),
            )
            self._records[task.id] = record
            self._persist(record)
        self._notify("task", record)
        return copy.deepcopy(record.task)

    def query_task(self, task_id: str) -> Task | None:
        record = self._records.get(task_id)
        return copy.deepcopy(record.task) if record is not None else None

    def revision(self, task_id: str) -> int:
        return self._require(task_id).revision

    def query_messages(self, task_id: str) -> list[Message]:
        return copy.deepcopy(self._require(task_id).messages)

    def query_subtasks(self, parent_id: str) -> list[Task]:
        return [
            copy.deepcopy(record.task)
            for record in self._records.values()
            if record.task.parent_id == parent_id
        ]

    def list_tasks(self, *, include_subtasks: bool = True) -> list[Task]:
        tasks = [
            copy.deepcopy(record.task)
            for record in self._records.values()
            if include_subtasks or record.task.parent_id is None
        ]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    def query_file(self, task_id: str, name: str) -> str | None:
        return self._require(task_id).files.get(name)

    def commit_task(self, task: Task, *, expected_revision: int | None = None) -> int:
        def _apply(record: _Record) -> None:
            record.task = copy.deepcopy(task)

        return self._commit("task", task.id, _apply, expected_revision)

    def commit_messages(
        self,
        task_id: str,
        messages: list[Message],
        *,
        expected_revision: int | None = None,
    ) -> int:
        def _apply(record: _Record) -> None:
            record.messages = copy.deepcopy(messages)

        return self._commit("messages", task_id, _apply, expected_revision)

    def commit_file(self, task_id: str, name: str, content: str) -> int:
        if name not in TASK_FILES:
            raise StoreError(f"Unsupported task file: {name}")

        def _apply(record: _Record) -> None:
            record.files[name] = content

        return self._commit("file", task_id, _apply)

    def update_task(self, task_id: str, updater: Callable[[Task], None]) -> Task:
        """Apply ``updater`` to the current task and commit, retrying on conflicts."""
        last_error: StoreError | None = None
        for _ in range(4):
            revision = self.revision(task_id)
            task = self.query_task(task_id)
            if task is None:
                raise StoreError(f"Unknown task: {task_id}")
            updater(task)
            try:
                self.commit_task(task, expected_revision=revision)
                return task
            except StoreError as exc:
                last_error = exc
                if "Concurrent update detected" not in str(exc):
                    raise
        raise StoreError(str(last_error) if last_error else "Task update failed.")
