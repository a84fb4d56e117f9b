from __future__ import annotations

from taskcore.approval import TOOLS_BY_PERMISSION
from taskcore.models import CheckpointPart, Message, ToolPart

MUTATING_TOOLS = frozenset(TOOLS_BY_PERMISSION["write"]) | frozenset(TOOLS_BY_PERMISSION["execute"])


def last_clean_checkpoint(messages: list[Message]) -> str | None:
    """The latest checkpoint, if no write or execute tool ran after it.

    A checkpoint followed by a mutating tool call no longer describes the
    workspace, so restoring it would discard changes the task made.
    """
    for message in reversed(messages):
        for part in reversed(message.parts):
            if isinstance(part, CheckpointPart):
                return part.commit or None
            if isinstance(part, ToolPart) and part.tool_name in MUTATING_TOOLS:
                return None
    return None
