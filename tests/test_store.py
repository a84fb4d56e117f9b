import json
from pathlib import Path

import pytest

from taskcore.exceptions import StoreError
from taskcore.models import Message, Task, TextPart, ToolPart
from taskcore.store import StoreEvent, TaskStore
from taskcore.task_errors import InternalError


def _seed(store: TaskStore, task_id: str = "t1", parent_id: str | None = None) -> Task:
    return store.create_task(
        Task(id=task_id, parent_id=parent_id, title=f"task {task_id}"),
        [Message(id=f"{task_id}-0", role="user", parts=[TextPart("hello")])],
    )


def test_in_memory_store_returns_copies() -> None:
    store = TaskStore()
    _seed(store)

    messages = store.query_messages("t1")
    messages[0].parts.append(TextPart("not committed"))
    task = store.query_task("t1")
    assert task is not None
    task.status = "completed"

    assert len(store.query_messages("t1")[0].parts) == 1
    assert store.query_task("t1").status == "pending-input"


def test_commits_notify_subscribers_until_unsubscribed() -> None:
    store = TaskStore()
    _seed(store)
    events: list[StoreEvent] = []
    unsubscribe = store.subscribe(events.append)

    task = store.query_task("t1")
    task.status = "pending-model"
    store.commit_task(task)
    store.commit_file("t1", "plan.md", "# Plan")
    unsubscribe()
    store.commit_messages("t1", [])

    assert [(event.kind, event.task_id) for event in events] == [("task", "t1"), ("file", "t1")]
    assert events[-1].revision == 3


def test_failing_subscriber_does_not_break_commit() -> None:
    store = TaskStore()
    _seed(store)
    seen: list[str] = []

    def _broken(event: StoreEvent) -> None:
        raise RuntimeError("listener bug")

    store.subscribe(_broken)
    store.subscribe(lambda event: seen.append(event.kind))
    store.commit_file("t1", "todos.md", "- [ ] one")

    assert seen == ["file"]
    assert store.query_file("t1", "todos.md") == "- [ ] one"


def test_expected_revision_detects_concurrent_update() -> None:
    store = TaskStore()
    _seed(store)
    revision = store.revision("t1")
    store.commit_file("t1", "plan.md", "v1")

    with pytest.raises(StoreError, match="Concurrent update detected"):
        store.commit_task(store.query_task("t1"), expected_revision=revision)


def test_update_task_applies_changes() -> None:
    store = TaskStore()
    _seed(store)

    def _fail(task: Task) -> None:
        task.status = "failed"
        task.error = InternalError("boom")

    store.update_task("t1", _fail)

    assert store.query_task("t1").error == InternalError("boom")


def test_unknown_tasks_and_files_are_rejected() -> None:
    store = TaskStore()
    _seed(store)

    assert store.query_task("missing") is None
    with pytest.raises(StoreError):
        store.query_messages("missing")
    with pytest.raises(StoreError, match="Unsupported task file"):
        store.commit_file("t1", "secrets.md", "x")
    with pytest.raises(StoreError, match="already exists"):
        _seed(store)


def test_subtasks_and_listing() -> None:
    store = TaskStore()
    _seed(store, "root")
    _seed(store, "child", parent_id="root")

    assert [task.id for task in store.query_subtasks("root")] == ["child"]
    assert {task.id for task in store.list_tasks()} == {"root", "child"}
    assert [task.id for task in store.list_tasks(include_subtasks=False)] == ["root"]


def test_persistent_store_reloads_from_disk(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / ".taskcore")
    _seed(store)
    messages = store.query_messages("t1")
    messages.append(
        Message(
            id="a1",
            role="assistant",
            parts=[ToolPart("readFile", "c1", state="output-available", output={"content": ""})],
        )
    )
    store.commit_messages("t1", messages)
    store.commit_file("t1", "plan.md", "# Plan")

    reloaded = TaskStore(tmp_path / ".taskcore")

    assert reloaded.query_messages("t1") == messages
    assert reloaded.query_file("t1", "plan.md") == "# Plan"
    assert reloaded.revision("t1") == store.revision("t1")
    on_disk = json.loads((tmp_path / ".taskcore" / "tasks" / "t1.json").read_text("utf-8"))
    assert on_disk["schema_version"] == TaskStore.SCHEMA_VERSION
    assert on_disk["data"]["task"]["id"] == "t1"
    assert not (tmp_path / ".taskcore" / "tasks" / ".lock").exists()


def test_persistent_store_skips_corrupt_files(tmp_path: Path) -> None:
    tasks_dir = tmp_path / "tasks"
    tasks_dir.mkdir()
    (tasks_dir / "broken.json").write_text("{not json", encoding="utf-8")
    (tasks_dir / "legacy.json").write_text(json.dumps({"id": "legacy"}), encoding="utf-8")

    store = TaskStore(tmp_path)

    assert store.list_tasks() == []
