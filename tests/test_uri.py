import pytest

from taskcore.uri import (
    MissingParentTaskError,
    PlannerPermissionError,
    RoleInfo,
    decode_uri_authority,
    encode_uri_authority,
    parse_resource_uri,
    resolve_resource_uri,
    resolve_tool_call_args,
)


def test_encode_uri_authority_uses_lowercase_hex() -> None:
    assert encode_uri_authority("Ab1") == "sid-hex-416231"
    assert encode_uri_authority("ü") == "sid-hex-c3bc"


@pytest.mark.parametrize("identifier", ["task-1", "ü/ñ", "", "sid-hex-nested"])
def test_authority_roundtrip(identifier: str) -> None:
    assert decode_uri_authority(encode_uri_authority(identifier).lower()) == identifier


@pytest.mark.parametrize(
    "authority",
    [
        "task-1",
        "sid-hex-ABCD",
        "sid-hex-abc",
        "sid-hex-zz",
        "sid-hex-ff",
        "hex-6162",
        "sid-hex-61\n",
        "sid-hex-61 62",
    ],
)
def test_decode_rejects_invalid_authorities(authority: str) -> None:
    assert decode_uri_authority(authority) is None


def test_self_placeholder_resolves_to_task_authority() -> None:
    resolved = resolve_resource_uri("pochi://-/plan.md", "task-1")

    assert resolved == f"pochi://{encode_uri_authority('task-1')}/plan.md"
    assert resolve_resource_uri("pochi://self/todos.md", "task-1") == (
        f"pochi://{encode_uri_authority('task-1')}/todos.md"
    )


def test_parent_placeholder_requires_parent() -> None:
    resolved = resolve_resource_uri("pochi://parent/plan.md", "child", parent_id="root")

    assert resolved == f"pochi://{encode_uri_authority('root')}/plan.md"
    with pytest.raises(MissingParentTaskError):
        resolve_resource_uri("pochi://parent/plan.md", "child")


def test_non_resource_strings_and_unknown_authorities_pass_through() -> None:
    assert resolve_resource_uri("src/app.py", "task-1") == "src/app.py"
    assert resolve_resource_uri("pochi://other/plan.md", "task-1") == "pochi://other/plan.md"


def test_planner_may_only_touch_plan_document() -> None:
    planner = RoleInfo("planner")

    assert resolve_resource_uri("pochi://-/plan.md", "task-1", planner).endswith("/plan.md")
    assert resolve_resource_uri("notes.txt", "task-1", planner) == "notes.txt"
    with pytest.raises(PlannerPermissionError, match="Planner only able to write"):
        resolve_resource_uri("pochi://-/todos.md", "task-1", planner)


def test_resolve_tool_call_args_rewrites_nested_values_in_order() -> None:
    args = {
        "path": "pochi://-/plan.md",
        "files": ["a.py", "pochi://-/comments.md"],
        "options": {"limit": 3, "target": "pochi://-/todos.md"},
        "flag": True,
    }

    resolved = resolve_tool_call_args(args, "task-1")

    authority = encode_uri_authority("task-1")
    assert list(resolved) == ["path", "files", "options", "flag"]
    assert resolved["path"] == f"pochi://{authority}/plan.md"
    assert resolved["files"] == ["a.py", f"pochi://{authority}/comments.md"]
    assert resolved["options"] == {"limit": 3, "target": f"pochi://{authority}/todos.md"}
    assert resolved["flag"] is True
    assert args["path"] == "pochi://-/plan.md"


def test_resolve_tool_call_args_falls_back_on_missing_task_id() -> None:
    assert resolve_tool_call_args({"path": "pochi://-/plan.md"}, "") == {
        "path": "pochi://-/plan.md"
    }


def test_resolve_tool_call_args_propagates_role_violations() -> None:
    with pytest.raises(PlannerPermissionError):
        resolve_tool_call_args({"path": ["pochi://-/todos.md"]}, "task-1", RoleInfo("planner"))


def test_parse_resource_uri() -> None:
    uri = resolve_resource_uri("pochi://-/plan.md", "task-1")

    assert parse_resource_uri(uri) == ("task-1", "plan.md")
    assert parse_resource_uri("pochi://-/plan.md") is None
    assert parse_resource_uri("file:///tmp/plan.md") is None
