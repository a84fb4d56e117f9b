"""Resolution of ``pochi:`` resource references in tool-call arguments.

Models address task-scoped resources (plan, todos, review comments) through a
placeholder authority, e.g. ``pochi://-/plan.md``. Before a tool runs, the
placeholder is rewritten to an authority that identifies the concrete task.
URI authorities are case-insensitive on the way through most URI handlers, so
task identifiers are hex encoded rather than embedded verbatim.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

RESOURCE_SCHEME = "pochi"
PLAN_DOCUMENT_URI = f"{RESOURCE_SCHEME}://-/plan.md"
AUTHORITY_PREFIX = "sid-hex-"
SELF_AUTHORITIES = {"-", "self"}
PARENT_AUTHORITY = "parent"
PLANNER_ROLE = "planner"

LOWER_HEX_PATTERN = re.compile(r"(?:[0-9a-f]{2})*")
PLACEHOLDER_PATTERN = re.compile(rf"^{RESOURCE_SCHEME}:(?P<slashes>//?)(?P<authority>[^/]*)/")
RESOLVED_URI_PATTERN = re.compile(
    rf"{RESOURCE_SCHEME}://(?P<authority>{AUTHORITY_PREFIX}[0-9a-fA-F]*)/(?P<path>.+)"
)


class UriResolutionError(ValueError):
    """Base class for resource URI resolution failures."""


class MalformedResourceUriError(UriResolutionError):
    """The reference cannot be resolved; callers fall back to the raw value."""


class MissingParentTaskError(UriResolutionError):
    def __init__(self, uri: str) -> None:
        super().__init__(f"Cannot resolve '{uri}': the task has no parent task.")
        self.uri = uri


class PlannerPermissionError(UriResolutionError):
    def __init__(self) -> None:
        super().__init__(f"Planner only able to write {PLAN_DOCUMENT_URI}")


@dataclass(frozen=True, slots=True)
class RoleInfo:
    """Agent role of the task issuing a tool call, e.g. ``planner``."""

    type: str


def encode_uri_authority(identifier: str) -> str:
    return AUTHORITY_PREFIX + identifier.encode("utf-8").hex()


def decode_uri_authority(authority: str) -> str | None:
    if not authority.startswith(AUTHORITY_PREFIX):
        return None
    encoded = authority[len(AUTHORITY_PREFIX) :]
    if not LOWER_HEX_PATTERN.fullmatch(encoded):
        return None
    try:
        return bytes.fromhex(encoded).decode("utf-8")
    except (ValueError, UnicodeDecodeError):
        return None


def is_resource_uri(value: str) -> bool:
    return value.startswith(f"{RESOURCE_SCHEME}:")


def resolve_resource_uri(
    value: str,
    task_id: str,
    role: RoleInfo | None = None,
    *,
    parent_id: str | None = None,
) -> str:
    if not is_resource_uri(value):
        return value

    if role is not None and role.type == PLANNER_ROLE and value != PLAN_DOCUMENT_URI:
        raise PlannerPermissionError()

    match = PLACEHOLDER_PATTERN.match(value)
    if match is None:
        return value

    authority = match.group("authority")
    if authority in SELF_AUTHORITIES:
        target = task_id
        if not target:
            raise MalformedResourceUriError(f"Cannot resolve '{value}': task id is required.")
    elif authority == PARENT_AUTHORITY:
        target = parent_id
        if not target:
            raise MissingParentTaskError(value)
    else:
        return value

    prefix = f"{RESOURCE_SCHEME}:{match.group('slashes')}"
    return f"{prefix}{encode_uri_authority(target)}/{value[match.end():]}"


def resolve_tool_call_args(
    args: Any,
    task_id: str,
    role: RoleInfo | None = None,
    *,
    parent_id: str | None = None,
) -> Any:
    """Return a copy of ``args`` with every resource reference resolved.

    Strings that fail to resolve are passed through unchanged so that unknown
    URI shapes keep working. Role violations and references to a missing
    parent task are raised to the caller.
    """
    if isinstance(args, str):
        try:
            return resolve_resource_uri(args, task_id, role, parent_id=parent_id)
        except (PlannerPermissionError, MissingParentTaskError):
            raise
        except UriResolutionError:
            return args
    if isinstance(args, list):
        return [resolve_tool_call_args(item, task_id, role, parent_id=parent_id) for item in args]
    if isinstance(args, tuple):
        return tuple(
            resolve_tool_call_args(item, task_id, role, parent_id=parent_id) for item in args
        )
    if isinstance(args, dict):
        return {
            key: resolve_tool_call_args(value, task_id, role, parent_id=parent_id)
            for key, value in args.items()
        }
    return args


def parse_resource_uri(uri: str) -> tuple[str, str] | None:
    """Split a resolved reference into ``(task_id, path)``."""
    match = RESOLVED_URI_PATTERN.fullmatch(uri)
    if match is None:
        return None
    task_id = decode_uri_authority(match.group("authority").lower())
    if task_id is None:
        return None
    return task_id, match.group("path")
