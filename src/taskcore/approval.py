from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

from taskcore.models import USER_INPUT_TOOLS, Message, ToolPart

ApprovalMode = Literal["manual", "auto"]

TOOLS_BY_PERMISSION: dict[str, tuple[str, ...]] = {
    "read": (
        "readFile",
        "listFiles",
        "globFiles",
        "searchFiles",
        "readBackgroundJobOutput",
        "webFetch",
        "webSearch",
    ),
    "write": ("writeToFile", "applyDiff", "multiApplyDiff"),
    "execute": (
        "executeCommand",
        "startBackgroundJob",
        "killBackgroundJob",
        "newTask",
    ),
    "default": ("todoWrite",),
}


@dataclass(slots=True)
class ApprovalGuard:
    """Lets exactly one approval decision skip the interactive prompt."""

    mode: ApprovalMode = "manual"

    def grant_once(self) -> None:
        self.mode = "auto"

    def consume(self) -> bool:
        granted = self.mode == "auto"
        self.mode = "manual"
        return granted


@dataclass(slots=True)
class AutoApproveSettings:
    enabled: bool = False
    read: bool = True
    write: bool = False
    execute: bool = False
    mcp: bool = False
    mcp_tools: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ApprovalDecision:
    approved: bool
    tools: list[ToolPart]
    reason: str


def pending_tool_calls(message: Message) -> list[ToolPart]:
    """Tool calls of an assistant message still waiting to be executed."""
    if message.role != "assistant":
        return []
    return [
        part
        for part in message.tool_parts()
        if part.state == "input-available" and part.tool_name not in USER_INPUT_TOOLS
    ]


def is_tool_auto_approved(tool_name: str, settings: AutoApproveSettings) -> bool:
    if tool_name in TOOLS_BY_PERMISSION["default"]:
        return True
    if not settings.enabled:
        return False
    for permission in ("read", "write", "execute"):
        if tool_name in TOOLS_BY_PERMISSION[permission]:
            return bool(getattr(settings, permission))
    return settings.mcp and tool_name in settings.mcp_tools


def decide_approval(
    tools: list[ToolPart],
    guard: ApprovalGuard,
    settings: AutoApproveSettings,
) -> ApprovalDecision:
    """Decide whether a batch of pending tool calls may run without prompting.

    The guard is consumed by every decision, approved or not. A granted guard
    only switches auto-approval on; each tool still needs its permission.
    """
    guarded = guard.consume()
    if guarded and not settings.enabled:
        settings = replace(settings, enabled=True)
    if all(is_tool_auto_approved(tool.tool_name, settings) for tool in tools):
        reason = "guard" if guarded else "policy"
        return ApprovalDecision(approved=True, tools=tools, reason=reason)
    return ApprovalDecision(approved=False, tools=tools, reason="manual")
