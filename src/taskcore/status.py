from __future__ import annotations

from typing import Literal

from taskcore.models import (
    USER_INPUT_TOOLS,
    FinishReason,
    Message,
    TaskStatus,
    ToolPart,
    current_step_parts,
)

BackgroundStatus = Literal["idle", "running", "completed"]


def resolve_status(message: Message, finish_reason: FinishReason | None) -> TaskStatus:
    """Compute the task status after a model step produced ``message``.

    Only the parts after the last ``step-start`` are considered. A step that
    ended without a finish reason (crash, lost stream) is always ``failed``.
    """
    if not finish_reason:
        return "failed"

    has_tool_call = False
    for part in current_step_parts(message):
        if not isinstance(part, ToolPart):
            continue
        # askFollowupQuestion / attemptCompletion end the task wherever they appear
        if part.tool_name in USER_INPUT_TOOLS:
            return "completed"
        has_tool_call = True

    if has_tool_call:
        return "pending-tool"
    if finish_reason == "error":
        return "failed"
    return "pending-input"


def background_status(status: TaskStatus) -> BackgroundStatus:
    if status == "pending-input":
        return "idle"
    if status in {"pending-tool", "pending-model"}:
        return "running"
    return "completed"
