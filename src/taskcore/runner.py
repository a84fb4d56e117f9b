from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from taskcore.abort import AbortSignal
from taskcore.approval import (
    ApprovalGuard,
    AutoApproveSettings,
    decide_approval,
    pending_tool_calls,
)
from taskcore.augment import StepAugmenter
from taskcore.backends.base import ModelBackend, StepFinish
from taskcore.checkpoints import last_clean_checkpoint
from taskcore.exceptions import StepAbortedError, StoreError
from taskcore.host import HostEnvironment
from taskcore.models import (
    FinishReason,
    Message,
    StepStartPart,
    Task,
    TextPart,
    ToolPart,
    current_step_parts,
)
from taskcore.status import resolve_status
from taskcore.store import TaskStore
from taskcore.subtask import NEW_TASK_TOOL, AsyncSubtaskTracker, SubtaskCoordinator
from taskcore.task_errors import AbortError, APICallError, InternalError, classify_error
from taskcore.tools import ToolContext, ToolRegistry, default_registry
from taskcore.uri import RoleInfo, resolve_tool_call_args

logger = logging.getLogger(__name__)

ToolApprover = Callable[[list[ToolPart]], Awaitable[bool]]


@dataclass(slots=True)
class StepContext:
    """Per-run state threaded through step dispatch and tool execution."""

    abort_signal: AbortSignal = field(default_factory=AbortSignal)
    approval_guard: ApprovalGuard = field(default_factory=ApprovalGuard)
    role: RoleInfo | None = None
    settings: AutoApproveSettings = field(default_factory=AutoApproveSettings)
    approver: ToolApprover | None = None

    def for_subtask(self, child: Task) -> StepContext:
        return StepContext(
            abort_signal=self.abort_signal,
            role=RoleInfo(child.role) if child.role else None,
            settings=self.settings,
            approver=self.approver,
        )


def new_message_id() -> str:
    return uuid.uuid4().hex


def _mark_pending_model(task: Task) -> None:
    task.status = "pending-model"


def finalize_interrupted_tools(message: Message, reason: str) -> int:
    """Move tool parts of the current step that never finished to ``output-error``."""
    count = 0
    for part in current_step_parts(message):
        if isinstance(part, ToolPart) and not part.is_terminal:
            part.state = "output-error"
            part.error_text = reason
            count += 1
    return count


class TaskRunner:
    def __init__(
        self,
        store: TaskStore,
        backend: ModelBackend,
        host: HostEnvironment,
        *,
        workspace: Path,
        tools: ToolRegistry | None = None,
        max_steps: int = 20,
        checkpoints: bool = True,
        workflow_commands: bool = True,
        augment_subtasks: bool = False,
        tracker: AsyncSubtaskTracker | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.host = host
        self.workspace = workspace
        self.tools = tools or default_registry()
        self.max_steps = max_steps
        self.augment_subtasks = augment_subtasks
        self.augmenter = StepAugmenter(
            host, checkpoints=checkpoints, workflow_commands=workflow_commands
        )
        self.tracker = tracker or AsyncSubtaskTracker(store)
        self._background: set[asyncio.Task[Task]] = set()

    def _task(self, task_id: str) -> Task:
        task = self.store.query_task(task_id)
        if task is None:
            raise StoreError(f"Unknown task: {task_id}")
        return task

    def create_task(
        self,
        prompt: str,
        *,
        task_id: str | None = None,
        title: str = "",
        role: str | None = None,
    ) -> Task:
        task = Task(id=task_id or uuid.uuid4().hex, title=title or prompt[:60], role=role)
        message = Message(id=new_message_id(), role="user", parts=[TextPart(text=prompt)])
        return self.store.create_task(task, [message])

    def add_user_message(self, task_id: str, text: str) -> Message:
        messages = self.store.query_messages(task_id)
        message = Message(id=new_message_id(), role="user", parts=[TextPart(text=text)])
        messages.append(message)
        self.store.commit_messages(task_id, messages)
        return message

    @staticmethod
    def can_retry(task: Task) -> bool:
        if task.status != "failed" or task.error is None:
            return False
        if isinstance(task.error, APICallError):
            return task.error.is_retryable
        return True

    def _persist(self, task: Task, messages: list[Message]) -> Task:
        task.last_checkpoint_hash = last_clean_checkpoint(messages)
        self.store.commit_messages(task.id, messages)
        self.store.commit_task(task)
        return task

    def _fail(self, task: Task, messages: list[Message], error: BaseException) -> Task:
        task.error = classify_error(error)
        task.status = "failed"
        if isinstance(task.error, AbortError) and messages:
            finalize_interrupted_tools(messages[-1], task.error.message)
        logger.warning("Task failed task=%s error=%s", task.id, task.error.message)
        return self._persist(task, messages)

    async def run_step(self, task_id: str, context: StepContext) -> Task:
        """Run one model step and record its outcome on the task."""
        task = self.store.update_task(task_id, _mark_pending_model)
        messages = self.store.query_messages(task_id)

        finish_reason: FinishReason | None = None
        try:
            if not task.is_subtask or self.augment_subtasks:
                await self.augmenter.augment(messages, context.abort_signal)

            if messages and messages[-1].role == "assistant":
                assistant = messages[-1]
            else:
                assistant = Message(id=new_message_id(), role="assistant")
                messages.append(assistant)
            assistant.parts.append(StepStartPart())

            logger.info("Step started task=%s messages=%d", task_id, len(messages))
            async for event in self.backend.stream_step(
                messages, self.tools.specs(), context.abort_signal
            ):
                if isinstance(event, StepFinish):
                    finish_reason = event.finish_reason
                else:
                    assistant.parts.append(event)
            context.abort_signal.raise_if_aborted()
        except asyncio.CancelledError as exc:
            self._fail(task, messages, exc)
            raise
        except Exception as exc:
            return self._fail(task, messages, exc)

        task.status = resolve_status(assistant, finish_reason)
        if task.status == "failed":
            task.error = InternalError("The model step did not finish successfully.")
        else:
            task.error = None
        logger.info(
            "Step finished task=%s status=%s reason=%s", task_id, task.status, finish_reason
        )
        return self._persist(task, messages)

    async def execute_pending_tools(self, task_id: str, context: StepContext) -> Task:
        """Run the approved tool calls of the last assistant message."""
        task = self._task(task_id)
        messages = self.store.query_messages(task_id)
        if not messages:
            return task
        pending = pending_tool_calls(messages[-1])
        if not pending:
            return task

        decision = decide_approval(pending, context.approval_guard, context.settings)
        approved = decision.approved
        if not approved and context.approver is not None:
            approved = await context.approver(pending)
        if not approved:
            logger.info("Tool calls awaiting approval task=%s count=%d", task_id, len(pending))
            return task

        coordinator = SubtaskCoordinator(self.store, context.approval_guard, tracker=self.tracker)
        call_ids = [part.tool_call_id for part in pending]
        try:
            for call_id in call_ids:
                context.abort_signal.raise_if_aborted()
                part = messages[-1].find_tool_call(call_id)
                if part is None or part.state != "input-available":
                    continue
                if part.tool_name == NEW_TASK_TOOL:
                    messages = await self._delegate(task, messages, part, coordinator, context)
                    part = messages[-1].find_tool_call(call_id)
                    if part is not None and part.state == "input-available":
                        # the subtask is still waiting for input
                        return self._task(task_id)
                    continue
                await self._execute_tool(task, part, context)
                self.store.commit_messages(task_id, messages)
        except asyncio.CancelledError as exc:
            self._fail(task, messages, exc)
            raise
        except StepAbortedError as exc:
            return self._fail(task, messages, exc)
        return self._task(task_id)

    async def _execute_tool(self, task: Task, part: ToolPart, context: StepContext) -> None:
        tool_context = ToolContext(
            task_id=task.id,
            workspace=self.workspace,
            host=self.host,
            store=self.store,
            abort_signal=context.abort_signal,
        )
        try:
            args = resolve_tool_call_args(
                part.input, task.id, context.role, parent_id=task.parent_id
            )
            part.output = await self.tools.execute(part.tool_name, args, tool_context)
            part.state = "output-available"
        except StepAbortedError:
            raise
        except Exception as exc:
            logger.warning("Tool failed task=%s tool=%s error=%s", task.id, part.tool_name, exc)
            part.state = "output-error"
            part.error_text = str(exc)

    async def _delegate(
        self,
        task: Task,
        messages: list[Message],
        part: ToolPart,
        coordinator: SubtaskCoordinator,
        context: StepContext,
    ) -> list[Message]:
        child = coordinator.dispatch(task.id, part)
        self.store.commit_messages(task.id, messages)
        child_context = context.for_subtask(child)

        if child.run_async:
            background = asyncio.create_task(self.run(child.id, child_context))
            self._background.add(background)
            background.add_done_callback(self._background.discard)
            return messages

        unsubscribe = coordinator.watch(task.id)
        try:
            await self.run(child.id, child_context)
        finally:
            unsubscribe()
        coordinator.propagate(task.id)
        return self.store.query_messages(task.id)

    async def run(
        self,
        task_id: str,
        context: StepContext,
        max_steps: int | None = None,
    ) -> Task:
        """Alternate model steps and tool execution until the task needs the user."""
        limit = max_steps or self.max_steps
        task = self._task(task_id)
        for step in range(limit):
            if task.status == "pending-tool":
                task = await self.execute_pending_tools(task_id, context)
                if task.status != "pending-tool":
                    return task
                if pending_tool_calls(self.store.query_messages(task_id)[-1]):
                    return task
            elif step > 0:
                return task
            task = await self.run_step(task_id, context)
        return task

    async def wait_for_background(
        self, timeout_seconds: float = 0, abort_signal: AbortSignal | None = None
    ) -> bool:
        result = await self.tracker.wait_for_all(timeout_seconds, abort_signal)
        return result.completed
