import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

from taskcore.abort import AbortSignal
from taskcore.approval import AutoApproveSettings
from taskcore.backends.base import ModelBackend, StepEvent, StepFinish
from taskcore.exceptions import ModelCallError, StepAbortedError
from taskcore.host import HostEnvironment
from taskcore.models import CheckpointPart, Message, StepStartPart, TextPart, ToolPart
from taskcore.runner import StepContext, TaskRunner
from taskcore.store import StoreEvent, TaskStore
from taskcore.task_errors import AbortError, APICallError, InternalError
from taskcore.tools import ToolSpec
from taskcore.uri import RoleInfo
from taskcore.workflow import CommandOutput


class FakeHost(HostEnvironment):
    def __init__(self) -> None:
        self.labels: list[str] = []

    async def create_checkpoint(self, label: str, *, force: bool = False) -> str | None:
        _ = force
        self.labels.append(label)
        return f"commit-{len(self.labels)}"

    async def execute_command(
        self, command: str, abort_signal: AbortSignal | None = None
    ) -> CommandOutput:
        _ = abort_signal
        return CommandOutput(output=f"ran {command}")


class ScriptedBackend(ModelBackend):
    """Replays canned steps, keyed by the first user prompt of the task."""

    def __init__(self, scripts: dict[str, list[list[StepEvent]]]) -> None:
        self.scripts = {prompt: list(steps) for prompt, steps in scripts.items()}
        self.prompts: list[str] = []

    async def stream_step(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[StepEvent]:
        _ = tools, abort_signal
        prompt = next(part.text for part in messages[0].parts if isinstance(part, TextPart))
        self.prompts.append(prompt)
        for event in self.scripts[prompt].pop(0):
            yield event


def _complete(result: str, call_id: str = "done") -> list[StepEvent]:
    return [
        ToolPart("attemptCompletion", call_id, input={"result": result}),
        StepFinish("tool-calls"),
    ]


def _runner(tmp_path: Path, backend: ModelBackend, host: HostEnvironment | None = None):
    store = TaskStore()
    runner = TaskRunner(store, backend, host or FakeHost(), workspace=tmp_path)
    return store, runner


def test_single_step_completion(tmp_path: Path) -> None:
    backend = ScriptedBackend({"hello": [[TextPart("Hi!"), *_complete("greeted")]]})
    store, runner = _runner(tmp_path, backend)
    task = runner.create_task("hello", task_id="t1")
    statuses: list[str] = []
    store.subscribe(
        lambda event: statuses.append(store.query_task(event.task_id).status)
        if event.kind == "task"
        else None
    )

    result = asyncio.run(runner.run(task.id, StepContext()))

    assert result.status == "completed"
    assert result.error is None
    assert statuses[0] == "pending-model"
    messages = store.query_messages("t1")
    assert isinstance(messages[0].parts[-1], CheckpointPart)
    assert isinstance(messages[-1].parts[0], StepStartPart)
    assert result.last_checkpoint_hash == "commit-1"


def test_tools_run_after_policy_approval(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "write it": [
                [
                    ToolPart("writeToFile", "c1", input={"path": "out.txt", "content": "data"}),
                    StepFinish("tool-calls"),
                ],
                _complete("written"),
            ]
        }
    )
    store, runner = _runner(tmp_path, backend)
    runner.create_task("write it", task_id="t1")
    context = StepContext(settings=AutoApproveSettings(enabled=True, write=True))

    result = asyncio.run(runner.run("t1", context))

    assert result.status == "completed"
    assert (tmp_path / "out.txt").read_text(encoding="utf-8") == "data"
    part = store.query_messages("t1")[-1].find_tool_call("c1")
    assert (part.state, part.output) == ("output-available", {"success": True})
    # the second step checkpointed the workspace after the write
    assert result.last_checkpoint_hash == "commit-2"


def test_unapproved_tools_leave_task_pending(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "run ls": [
                [ToolPart("executeCommand", "c1", input={"command": "ls"}), StepFinish("stop")]
            ]
        }
    )
    store, runner = _runner(tmp_path, backend)
    runner.create_task("run ls", task_id="t1")
    asked: list[list[str]] = []

    async def _deny(tools: list[ToolPart]) -> bool:
        asked.append([tool.tool_call_id for tool in tools])
        return False

    result = asyncio.run(runner.run("t1", StepContext(approver=_deny)))

    assert result.status == "pending-tool"
    assert asked == [["c1"]]
    assert store.query_messages("t1")[-1].find_tool_call("c1").state == "input-available"


def test_tool_errors_are_reported_to_the_model(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "read": [
                [ToolPart("readFile", "c1", input={"path": "missing.txt"}), StepFinish("stop")],
                _complete("gave up"),
            ]
        }
    )
    store, runner = _runner(tmp_path, backend)
    runner.create_task("read", task_id="t1")
    context = StepContext(settings=AutoApproveSettings(enabled=True))

    result = asyncio.run(runner.run("t1", context))

    part = store.query_messages("t1")[-1].find_tool_call("c1")
    assert part.state == "output-error"
    assert "File not found" in part.error_text
    assert result.status == "completed"


def test_backend_failure_is_classified(tmp_path: Path) -> None:
    class FailingBackend(ModelBackend):
        async def stream_step(
            self,
            messages: list[Message],
            tools: list[ToolSpec],
            abort_signal: AbortSignal | None = None,
        ) -> AsyncIterator[StepEvent]:
            _ = messages, tools, abort_signal
            raise ModelCallError("overloaded", url="https://api.example.com", is_retryable=True)
            yield StepFinish("stop")  # pragma: no cover

    store, runner = _runner(tmp_path, FailingBackend())
    runner.create_task("hello", task_id="t1")

    result = asyncio.run(runner.run("t1", StepContext()))

    assert result.status == "failed"
    assert isinstance(result.error, APICallError)
    assert TaskRunner.can_retry(result) is True
    assert store.query_task("t1").error == result.error


def test_abort_finalizes_interrupted_tool_parts(tmp_path: Path) -> None:
    class AbortingBackend(ModelBackend):
        async def stream_step(
            self,
            messages: list[Message],
            tools: list[ToolSpec],
            abort_signal: AbortSignal | None = None,
        ) -> AsyncIterator[StepEvent]:
            _ = messages, tools
            yield ToolPart("writeToFile", "c1", state="input-streaming")
            assert abort_signal is not None
            abort_signal.abort("stopped by user")
            raise StepAbortedError(abort_signal.reason)

    store, runner = _runner(tmp_path, AbortingBackend())
    runner.create_task("hello", task_id="t1")

    result = asyncio.run(runner.run("t1", StepContext()))

    assert result.status == "failed"
    assert result.error == AbortError("stopped by user")
    part = store.query_messages("t1")[-1].find_tool_call("c1")
    assert (part.state, part.error_text) == ("output-error", "stopped by user")


def test_missing_finish_reason_fails_step(tmp_path: Path) -> None:
    backend = ScriptedBackend({"hello": [[TextPart("partial")]]})
    _, runner = _runner(tmp_path, backend)
    runner.create_task("hello", task_id="t1")

    result = asyncio.run(runner.run_step("t1", StepContext()))

    assert result.status == "failed"
    assert isinstance(result.error, InternalError)
    assert TaskRunner.can_retry(result) is True


def test_subtask_result_is_propagated_to_parent(tmp_path: Path) -> None:
    new_task = ToolPart(
        "newTask",
        "nt-1",
        input={"description": "Explore", "prompt": "find the loader"},
    )
    backend = ScriptedBackend(
        {
            "parent goal": [[new_task, StepFinish("tool-calls")], _complete("all done")],
            "find the loader": [_complete("loader.py", call_id="child-done")],
        }
    )
    host = FakeHost()
    store, runner = _runner(tmp_path, backend, host)
    runner.create_task("parent goal", task_id="parent")
    context = StepContext(settings=AutoApproveSettings(enabled=True, execute=True))
    events: list[StoreEvent] = []
    store.subscribe(events.append)

    result = asyncio.run(runner.run("parent", context))

    assert result.status == "completed"
    assert backend.prompts == ["parent goal", "find the loader", "parent goal"]
    part = store.query_messages("parent")[-1].find_tool_call("nt-1")
    assert part.state == "output-available"
    assert part.output == {"result": "loader.py"}
    (child,) = store.query_subtasks("parent")
    assert child.status == "completed"
    assert part.input["_meta"]["uid"] == child.id
    # subtasks share the root workspace checkpoints
    assert all(label.startswith("ckpt-msg-") for label in host.labels)
    assert len(host.labels) == 2
    assert context.approval_guard.mode == "auto"


def test_planner_role_cannot_write_other_task_files(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "plan": [
                [
                    ToolPart(
                        "writeToFile",
                        "c1",
                        input={"path": "pochi://-/todos.md", "content": "- [ ] x"},
                    ),
                    ToolPart(
                        "writeToFile",
                        "c2",
                        input={"path": "pochi://-/plan.md", "content": "# Plan"},
                    ),
                    StepFinish("tool-calls"),
                ],
                _complete("planned"),
            ]
        }
    )
    store, runner = _runner(tmp_path, backend)
    runner.create_task("plan", task_id="t1", role="planner")
    context = StepContext(
        role=RoleInfo("planner"),
        settings=AutoApproveSettings(enabled=True, write=True),
    )

    asyncio.run(runner.run("t1", context))

    messages = store.query_messages("t1")
    denied = messages[-1].find_tool_call("c1")
    allowed = messages[-1].find_tool_call("c2")
    assert denied.state == "output-error"
    assert "Planner only able to write pochi://-/plan.md" in denied.error_text
    assert allowed.state == "output-available"
    assert store.query_file("t1", "plan.md") == "# Plan"
    assert store.query_file("t1", "todos.md") is None
