from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from taskcore.abort import AbortSignal
from taskcore.exceptions import InvalidToolInputError, NoSuchToolError, StoreError
from taskcore.host import HostEnvironment
from taskcore.store import TASK_FILES, TaskStore
from taskcore.uri import is_resource_uri, parse_resource_uri

logger = logging.getLogger(__name__)


class StrictModel(BaseModel):
    """Tool input that rejects unknown keys."""

    model_config = ConfigDict(extra="forbid")


class ReadFileInput(StrictModel):
    path: str = Field(
        description="Workspace-relative path, or a task file such as pochi://-/plan.md."
    )
    startLine: int | None = Field(default=None, ge=1, description="First line to read, 1-based.")
    endLine: int | None = Field(default=None, ge=1, description="Last line to read, inclusive.")


class WriteToFileInput(StrictModel):
    path: str
    content: str


class ExecuteCommandInput(StrictModel):
    command: str


TodoStatus = Literal["pending", "in-progress", "completed", "cancelled"]


class TodoItem(StrictModel):
    id: str
    content: str
    status: TodoStatus = "pending"
    priority: Literal["low", "medium", "high"] | None = None


class TodoWriteInput(StrictModel):
    todos: list[TodoItem]


class NewTaskInput(BaseModel):
    description: str
    prompt: str
    agentType: str | None = None
    runAsync: bool = False


class AttemptCompletionInput(StrictModel):
    result: str
    command: str | None = None


class AskFollowupQuestionInput(StrictModel):
    question: str
    followUp: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class ToolContext:
    task_id: str
    workspace: Path
    host: HostEnvironment
    store: TaskStore
    abort_signal: AbortSignal | None = None


ToolHandler = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel]

    @property
    def parameters(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()


def _validation_message(name: str, exc: ValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(loc) for loc in error['loc']) or 'input'}: {error['msg']}"
        for error in exc.errors()
    )
    return f"Invalid arguments for {name}: {problems}"


class ToolRegistry:
    """Tool declarations offered to the model, and handlers for the executable ones.

    Declared-only tools (``newTask``, ``attemptCompletion``,
    ``askFollowupQuestion``) are resolved by the runner, not executed here.
    """

    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._handlers: dict[str, ToolHandler] = {}

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def declare(self, spec: ToolSpec) -> None:
        self._specs[spec.name] = spec

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def names(self) -> list[str]:
        return list(self._specs)

    def validate(self, name: str, args: Any) -> BaseModel:
        spec = self._specs.get(name)
        if spec is None:
            raise NoSuchToolError(name)
        try:
            return spec.input_model.model_validate(args)
        except ValidationError as exc:
            raise InvalidToolInputError(name, _validation_message(name, exc)) from exc

    async def execute(self, name: str, args: Any, context: ToolContext) -> Any:
        handler = self._handlers.get(name)
        if handler is None:
            raise NoSuchToolError(name)
        arguments = self.validate(name, args)
        if context.abort_signal is not None:
            context.abort_signal.raise_if_aborted()
        logger.debug("Executing tool name=%s task=%s", name, context.task_id)
        return await handler(arguments, context)


def _task_file_target(uri: str, tool_name: str) -> tuple[str, str]:
    parsed = parse_resource_uri(uri)
    if parsed is None:
        raise InvalidToolInputError(tool_name, f"Unresolved resource reference: {uri}")
    task_id, name = parsed
    if name not in TASK_FILES:
        raise InvalidToolInputError(tool_name, f"Unsupported task file: {name}")
    return task_id, name


def _workspace_path(path: str, context: ToolContext, tool_name: str) -> Path:
    root = context.workspace.resolve()
    target = (root / path).resolve()
    if target != root and root not in target.parents:
        raise InvalidToolInputError(tool_name, f"Path escapes the workspace: {path}")
    return target


def select_lines(content: str, start_line: int | None, end_line: int | None) -> str:
    if start_line is None and end_line is None:
        return content
    lines = content.splitlines(keepends=True)
    start = (start_line or 1) - 1
    end = end_line if end_line is not None else len(lines)
    return "".join(lines[start:end])


async def read_file(args: ReadFileInput, context: ToolContext) -> dict[str, Any]:
    if is_resource_uri(args.path):
        task_id, name = _task_file_target(args.path, "readFile")
        try:
            content = context.store.query_file(task_id, name) or ""
        except StoreError as exc:
            raise InvalidToolInputError("readFile", str(exc)) from exc
    else:
        target = _workspace_path(args.path, context, "readFile")
        if not target.is_file():
            raise FileNotFoundError(f"File not found: {args.path}")
        content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    return {"content": select_lines(content, args.startLine, args.endLine), "isTruncated": False}


async def write_to_file(args: WriteToFileInput, context: ToolContext) -> dict[str, Any]:
    if is_resource_uri(args.path):
        task_id, name = _task_file_target(args.path, "writeToFile")
        try:
            context.store.commit_file(task_id, name, args.content)
        except StoreError as exc:
            raise InvalidToolInputError("writeToFile", str(exc)) from exc
        return {"success": True}

    target = _workspace_path(args.path, context, "writeToFile")
    target.parent.mkdir(parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, args.content, encoding="utf-8")
    return {"success": True}


async def execute_command(args: ExecuteCommandInput, context: ToolContext) -> dict[str, Any]:
    result = await context.host.execute_command(args.command, context.abort_signal)
    payload: dict[str, Any] = {"output": result.output}
    if result.error:
        payload["error"] = result.error
    return payload


def render_todos(todos: list[TodoItem]) -> str:
    lines = []
    for todo in todos:
        mark = "x" if todo.status == "completed" else ("-" if todo.status == "cancelled" else " ")
        lines.append(f"- [{mark}] {todo.content}")
    return "\n".join(lines) + ("\n" if lines else "")


async def todo_write(args: TodoWriteInput, context: ToolContext) -> dict[str, Any]:
    context.store.commit_file(context.task_id, "todos.md", render_todos(args.todos))
    return {"success": True}


def default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            "readFile",
            "Read a workspace file or a task file such as pochi://-/plan.md.",
            ReadFileInput,
        ),
        read_file,
    )
    registry.register(
        ToolSpec(
            "writeToFile",
            "Write a workspace file or a task file such as pochi://-/plan.md.",
            WriteToFileInput,
        ),
        write_to_file,
    )
    registry.register(
        ToolSpec("executeCommand", "Run a shell command in the workspace.", ExecuteCommandInput),
        execute_command,
    )
    registry.register(
        ToolSpec("todoWrite", "Replace the task's todo list.", TodoWriteInput),
        todo_write,
    )
    registry.declare(
        ToolSpec(
            "newTask", "Delegate a self-contained piece of work to a subtask.", NewTaskInput
        )
    )
    registry.declare(
        ToolSpec(
            "attemptCompletion", "Finish the task and report its result.", AttemptCompletionInput
        )
    )
    registry.declare(
        ToolSpec(
            "askFollowupQuestion",
            "Ask the user a question and wait for the answer.",
            AskFollowupQuestionInput,
        )
    )
    return registry
