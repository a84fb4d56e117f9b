from taskcore.approval import (
    ApprovalGuard,
    AutoApproveSettings,
    decide_approval,
    is_tool_auto_approved,
    pending_tool_calls,
)
from taskcore.checkpoints import last_clean_checkpoint
from taskcore.models import CheckpointPart, Message, StepStartPart, TextPart, ToolPart


def test_guard_is_consumed_once() -> None:
    guard = ApprovalGuard()
    assert guard.consume() is False

    guard.grant_once()
    assert guard.mode == "auto"
    assert guard.consume() is True
    assert guard.mode == "manual"
    assert guard.consume() is False


def test_decision_consumes_guard_even_when_policy_would_approve() -> None:
    guard = ApprovalGuard()
    guard.grant_once()
    tools = [ToolPart("todoWrite", "c1")]

    first = decide_approval(tools, guard, AutoApproveSettings())
    second = decide_approval(tools, guard, AutoApproveSettings())

    assert (first.approved, first.reason) == (True, "guard")
    assert (second.approved, second.reason) == (True, "policy")
    assert guard.mode == "manual"


def test_guard_enables_auto_approve_but_keeps_tool_permissions() -> None:
    guard = ApprovalGuard()
    guard.grant_once()
    settings = AutoApproveSettings(enabled=False, read=True, execute=False, write=False)
    command = [ToolPart("executeCommand", "c1", input={"command": "rm -rf build"})]

    decision = decide_approval(command, guard, settings)

    assert decision.approved is False
    assert decision.reason == "manual"
    assert guard.mode == "manual"
    assert settings.enabled is False

    guard.grant_once()
    read = decide_approval([ToolPart("readFile", "c2")], guard, settings)
    assert (read.approved, read.reason) == (True, "guard")
    assert decide_approval([ToolPart("readFile", "c3")], guard, settings).approved is False


def test_manual_decision_without_guard_or_policy() -> None:
    decision = decide_approval(
        [ToolPart("writeToFile", "c1")], ApprovalGuard(), AutoApproveSettings(enabled=True)
    )

    assert decision.approved is False
    assert decision.reason == "manual"


def test_auto_approve_policy_by_permission() -> None:
    disabled = AutoApproveSettings()
    enabled = AutoApproveSettings(enabled=True, write=True, mcp=True, mcp_tools=["lookup"])

    assert is_tool_auto_approved("todoWrite", disabled) is True
    assert is_tool_auto_approved("readFile", disabled) is False
    assert is_tool_auto_approved("readFile", enabled) is True
    assert is_tool_auto_approved("writeToFile", enabled) is True
    assert is_tool_auto_approved("executeCommand", enabled) is False
    assert is_tool_auto_approved("newTask", enabled) is False
    assert is_tool_auto_approved("lookup", enabled) is True
    assert is_tool_auto_approved("unknown", enabled) is False


def test_pending_tool_calls_skip_user_input_and_finished_calls() -> None:
    message = Message(
        id="a1",
        role="assistant",
        parts=[
            ToolPart("readFile", "c1", state="output-available", output={}),
            ToolPart("writeToFile", "c2"),
            ToolPart("attemptCompletion", "c3"),
            ToolPart("executeCommand", "c4", state="input-streaming"),
        ],
    )

    assert [part.tool_call_id for part in pending_tool_calls(message)] == ["c2"]
    assert pending_tool_calls(Message(id="u1", role="user")) == []


def test_last_clean_checkpoint_ignores_checkpoints_followed_by_mutations() -> None:
    clean = [
        Message(id="u1", role="user", parts=[TextPart("go"), CheckpointPart("aaa")]),
        Message(
            id="a1",
            role="assistant",
            parts=[StepStartPart(), ToolPart("readFile", "c1", state="output-available")],
        ),
    ]
    dirty = clean + [
        Message(
            id="a2",
            role="assistant",
            parts=[StepStartPart(), ToolPart("writeToFile", "c2", state="output-available")],
        )
    ]

    assert last_clean_checkpoint(clean) == "aaa"
    assert last_clean_checkpoint(dirty) is None
    assert last_clean_checkpoint([]) is None
