from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from taskcore.abort import AbortSignal
from taskcore.approval import ApprovalGuard
from taskcore.exceptions import StoreError
from taskcore.models import Message, Task, TextPart, ToolPart
from taskcore.status import BackgroundStatus, background_status
from taskcore.store import StoreEvent, TaskStore
from taskcore.task_errors import error_message

logger = logging.getLogger(__name__)

NEW_TASK_TOOL = "newTask"
COMPLETION_TOOL = "attemptCompletion"

RUNNING_OUTPUT = (
    "The task is currently running. You can continue working while it executes in the background."
)
NO_RESULT_ERROR = (
    "The task completed successfully, but no result was returned via the attemptCompletion tool."
)


def subtask_uid(part: ToolPart) -> str | None:
    if not isinstance(part.input, dict):
        return None
    meta = part.input.get("_meta")
    if not isinstance(meta, dict):
        return None
    uid = meta.get("uid")
    return str(uid) if uid else None


def extract_task_result(store: TaskStore, task_id: str) -> Any | None:
    """The ``result`` argument of the task's latest ``attemptCompletion`` call."""
    for message in reversed(store.query_messages(task_id)):
        for part in reversed(message.tool_parts(COMPLETION_TOOL)):
            if isinstance(part.input, dict) and "result" in part.input:
                return part.input["result"]
    return None


@dataclass(frozen=True, slots=True)
class AsyncTaskOutput:
    output: str
    status: BackgroundStatus
    is_truncated: bool = False
    error: str | None = None


@dataclass(frozen=True, slots=True)
class WaitResult:
    completed: bool
    timed_out: bool


class AsyncSubtaskTracker:
    """Follows subtasks started with ``runAsync`` until they finish."""

    def __init__(self, store: TaskStore, *, poll_interval_seconds: float = 0.5) -> None:
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._task_ids: list[str] = []

    def register(self, task_id: str) -> None:
        if task_id not in self._task_ids:
            self._task_ids.append(task_id)

    def read_task_output(self, task_id: str) -> AsyncTaskOutput | None:
        task = self.store.query_task(task_id)
        if task is None:
            return None

        status = background_status(task.status)
        if status != "completed":
            return AsyncTaskOutput(output=RUNNING_OUTPUT, status=status)

        result = extract_task_result(self.store, task_id)
        if result is None:
            content = ""
        elif isinstance(result, str):
            content = result
        else:
            content = json.dumps(result, ensure_ascii=False)

        if task.status == "failed":
            error = error_message(task.error) or "The task failed."
        else:
            error = None if content else NO_RESULT_ERROR
        return AsyncTaskOutput(output=content, status=status, error=error)

    def pending_task_ids(self) -> list[str]:
        pending = []
        for task_id in self._task_ids:
            task = self.store.query_task(task_id)
            if task is None:
                continue
            if background_status(task.status) != "completed":
                pending.append(task_id)
        return pending

    def has_pending_tasks(self) -> bool:
        return bool(self.pending_task_ids())

    async def wait_for_all(
        self,
        timeout_seconds: float = 0,
        abort_signal: AbortSignal | None = None,
    ) -> WaitResult:
        """Poll until every registered task finished; ``0`` waits forever."""
        started = time.monotonic()
        while self.has_pending_tasks():
            if abort_signal is not None and abort_signal.aborted:
                return WaitResult(completed=False, timed_out=False)
            if timeout_seconds > 0 and time.monotonic() - started >= timeout_seconds:
                return WaitResult(completed=False, timed_out=True)
            await asyncio.sleep(self.poll_interval_seconds)
        return WaitResult(completed=True, timed_out=False)


class SubtaskCoordinator:
    """Creates child tasks for ``newTask`` calls and feeds their results back.

    The parent's pending ``newTask`` part is matched to its child through
    ``input._meta.uid``. Once a result is written into the part, the approval
    guard is granted so the parent can continue without prompting.
    """

    def __init__(
        self,
        store: TaskStore,
        guard: ApprovalGuard,
        *,
        tracker: AsyncSubtaskTracker | None = None,
    ) -> None:
        self.store = store
        self.guard = guard
        self.tracker = tracker or AsyncSubtaskTracker(store)

    def dispatch(self, parent_id: str, part: ToolPart, *, manual_run: bool = False) -> Task:
        """Create the child task for ``part``; the caller commits the parent's messages."""
        if not isinstance(part.input, dict):
            part.input = {}
        meta = part.input.setdefault("_meta", {})
        uid = meta.get("uid") or uuid.uuid4().hex
        meta["uid"] = uid
        run_async = bool(part.input.get("runAsync", False))

        child = self.store.query_task(uid)
        if child is None:
            prompt = str(part.input.get("prompt") or "")
            child = self.store.create_task(
                Task(
                    id=uid,
                    parent_id=parent_id,
                    title=str(part.input.get("description") or ""),
                    role=part.input.get("agentType"),
                    manual_run=manual_run,
                    run_async=run_async,
                ),
                [Message(id=f"{uid}-0", role="user", parts=[TextPart(text=prompt)])],
            )
            logger.info("Dispatched subtask parent=%s child=%s async=%s", parent_id, uid, run_async)

        if run_async:
            self.tracker.register(uid)
            part.state = "output-available"
            part.output = {
                "result": f"Task {uid} started in background.",
                "taskId": uid,
            }
        return child

    def watch(self, parent_id: str) -> Callable[[], None]:
        """Propagate child results whenever one of the parent's subtasks changes."""

        def _on_event(event: StoreEvent) -> None:
            if event.task_id == parent_id:
                return
            child = self.store.query_task(event.task_id)
            if child is not None and child.parent_id == parent_id:
                self.propagate(parent_id)

        return self.store.subscribe(_on_event)

    def propagate(self, parent_id: str) -> bool:
        try:
            messages = self.store.query_messages(parent_id)
        except StoreError:
            logger.warning("Cannot propagate subtask results parent=%s", parent_id)
            return False
        if not messages:
            return False

        changed = False
        completed = False
        for part in messages[-1].tool_parts(NEW_TASK_TOOL):
            if part.state != "input-available":
                continue
            uid = subtask_uid(part)
            child = self.store.query_task(uid) if uid else None
            if child is None:
                continue

            if child.status == "failed":
                part.state = "output-error"
                part.error_text = error_message(child.error) or "The task failed."
                changed = True
                continue
            if not self._is_finished(child):
                continue

            result = extract_task_result(self.store, child.id)
            if result is None:
                continue
            part.state = "output-available"
            part.output = {"result": result}
            changed = completed = True

        if changed:
            self.store.commit_messages(parent_id, messages)
        if completed:
            self.guard.grant_once()
            logger.info("Propagated subtask result parent=%s", parent_id)
        return changed

    def _is_finished(self, child: Task) -> bool:
        if child.status == "completed":
            return True
        if not child.manual_run:
            return False
        messages = self.store.query_messages(child.id)
        if not messages:
            return False
        return any(
            part.state == "input-available" for part in messages[-1].tool_parts(COMPLETION_TOOL)
        )
