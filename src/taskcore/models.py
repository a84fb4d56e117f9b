from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from taskcore.task_errors import TaskError, task_error_from_dict

TaskStatus = Literal["completed", "pending-input", "pending-tool", "pending-model", "failed"]
FinishReason = Literal[
    "stop", "length", "content-filter", "tool-calls", "error", "other", "unknown"
]
ToolState = Literal["input-streaming", "input-available", "output-available", "output-error"]
MessageRole = Literal["user", "assistant"]

TERMINAL_TOOL_STATES = {"output-available", "output-error"}
USER_INPUT_TOOLS = {"askFollowupQuestion", "attemptCompletion"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class StepStartPart:
    @property
    def type(self) -> str:
        return "step-start"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type}


@dataclass(slots=True)
class TextPart:
    text: str

    @property
    def type(self) -> str:
        return "text"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ReasoningPart:
    text: str

    @property
    def type(self) -> str:
        return "reasoning"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass(slots=True)
class ToolPart:
    tool_name: str
    tool_call_id: str
    state: ToolState = "input-available"
    input: Any = None
    output: Any = None
    error_text: str | None = None

    @property
    def type(self) -> str:
        return f"tool-{self.tool_name}"

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_TOOL_STATES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "toolCallId": self.tool_call_id,
            "state": self.state,
            "input": self.input,
        }
        if self.output is not None:
            payload["output"] = self.output
        if self.error_text is not None:
            payload["errorText"] = self.error_text
        return payload


@dataclass(slots=True)
class CheckpointPart:
    commit: str

    @property
    def type(self) -> str:
        return "data-checkpoint"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": {"commit": self.commit}}


@dataclass(slots=True)
class DataPart:
    """Any other ``data-<name>`` part, carried verbatim."""

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def type(self) -> str:
        return f"data-{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": dict(self.data)}


Part = StepStartPart | TextPart | ReasoningPart | ToolPart | CheckpointPart | DataPart


def part_from_dict(payload: dict[str, Any]) -> Part:
    part_type = str(payload.get("type", ""))
    if part_type == "step-start":
        return StepStartPart()
    if part_type == "text":
        return TextPart(text=str(payload.get("text", "")))
    if part_type == "reasoning":
        return ReasoningPart(text=str(payload.get("text", "")))
    if part_type == "data-checkpoint":
        data = payload.get("data") or {}
        return CheckpointPart(commit=str(data.get("commit", "")))
    if part_type.startswith("data-"):
        data = payload.get("data")
        return DataPart(name=part_type[len("data-") :], data=data if isinstance(data, dict) else {})
    if part_type.startswith("tool-"):
        return ToolPart(
            tool_name=part_type[len("tool-") :],
            tool_call_id=str(payload.get("toolCallId", "")),
            state=payload.get("state", "input-available"),
            input=payload.get("input"),
            output=payload.get("output"),
            error_text=payload.get("errorText"),
        )
    raise ValueError(f"Unknown part type: {part_type!r}")


def last_step_start_index(parts: list[Part]) -> int:
    for index in range(len(parts) - 1, -1, -1):
        if isinstance(parts[index], StepStartPart):
            return index
    return -1


def current_step_parts(message: Message) -> list[Part]:
    """Parts generated after the last ``step-start`` boundary."""
    return message.parts[last_step_start_index(message.parts) + 1 :]


@dataclass(slots=True)
class Message:
    id: str
    role: MessageRole
    parts: list[Part] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def tool_parts(self, tool_name: str | None = None) -> list[ToolPart]:
        return [
            part
            for part in self.parts
            if isinstance(part, ToolPart) and (tool_name is None or part.tool_name == tool_name)
        ]

    def find_tool_call(self, tool_call_id: str) -> ToolPart | None:
        for part in self.tool_parts():
            if part.tool_call_id == tool_call_id:
                return part
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "parts": [part.to_dict() for part in self.parts],
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Message:
        return cls(
            id=str(payload["id"]),
            role=payload.get("role", "user"),
            parts=[part_from_dict(item) for item in payload.get("parts", [])],
            metadata=dict(payload.get("metadata") or {}),
        )


@dataclass(slots=True)
class Task:
    id: str
    parent_id: str | None = None
    status: TaskStatus = "pending-input"
    error: TaskError | None = None
    last_checkpoint_hash: str | None = None
    title: str = ""
    role: str | None = None
    manual_run: bool = False
    run_async: bool = False
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    @property
    def is_subtask(self) -> bool:
        return self.parent_id is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "status": self.status,
            "error": self.error.to_dict() if self.error is not None else None,
            "lastCheckpointHash": self.last_checkpoint_hash,
            "title": self.title,
            "role": self.role,
            "manualRun": self.manual_run,
            "runAsync": self.run_async,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            id=str(payload["id"]),
            parent_id=payload.get("parentId"),
            status=payload.get("status", "pending-input"),
            error=task_error_from_dict(payload.get("error")),
            last_checkpoint_hash=payload.get("lastCheckpointHash"),
            title=str(payload.get("title") or ""),
            role=payload.get("role"),
            manual_run=bool(payload.get("manualRun", False)),
            run_async=bool(payload.get("runAsync", False)),
            created_at=payload.get("createdAt") or _utcnow_iso(),
            updated_at=payload.get("updatedAt") or _utcnow_iso(),
        )
