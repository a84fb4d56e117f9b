"""Structured error records attached to failed tasks.

``classify_error`` turns anything raised while stepping a task into exactly
one of the three record kinds. It never raises.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, ClassVar

from taskcore.exceptions import (
    InvalidToolInputError,
    ModelCallError,
    NoSuchToolError,
    StepAbortedError,
)

API_CALL_ERROR_FIELDS = frozenset(
    {"name", "message", "url", "isRetryable", "requestBodyValues", "responseHeaders"}
)


@dataclass(frozen=True, slots=True)
class APICallError:
    kind: ClassVar[str] = "APICallError"

    url: str
    is_retryable: bool
    message: str
    request_body_values: Any = None
    response_headers: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "url": self.url,
            "isRetryable": self.is_retryable,
            "message": self.message,
            "requestBodyValues": self.request_body_values,
            "responseHeaders": dict(self.response_headers),
        }


@dataclass(frozen=True, slots=True)
class InternalError:
    kind: ClassVar[str] = "InternalError"

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


@dataclass(frozen=True, slots=True)
class AbortError:
    kind: ClassVar[str] = "AbortError"

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


TaskError = APICallError | InternalError | AbortError


def task_error_from_dict(payload: dict[str, Any] | None) -> TaskError | None:
    if not isinstance(payload, dict):
        return None
    kind = payload.get("kind")
    message = str(payload.get("message", ""))
    if kind == "APICallError":
        headers = payload.get("responseHeaders")
        return APICallError(
            url=str(payload.get("url", "")),
            is_retryable=bool(payload.get("isRetryable", False)),
            message=message,
            request_body_values=payload.get("requestBodyValues"),
            response_headers=headers if isinstance(headers, dict) else {},
        )
    if kind == "AbortError":
        return AbortError(message=message)
    if kind == "InternalError":
        return InternalError(message=message)
    return None


def error_message(error: TaskError | dict[str, Any] | None) -> str | None:
    if error is None:
        return None
    if isinstance(error, dict):
        message = error.get("message")
        return message if isinstance(message, str) else None
    return error.message


def _api_call_error_from_message(message: str) -> APICallError | None:
    try:
        payload = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict) or not API_CALL_ERROR_FIELDS <= payload.keys():
        return None
    headers = payload["responseHeaders"]
    return APICallError(
        url=str(payload["url"]),
        is_retryable=bool(payload["isRetryable"]),
        message=str(payload["message"]),
        request_body_values=payload["requestBodyValues"],
        response_headers=headers if isinstance(headers, dict) else {},
    )


def _safe_str(error: BaseException) -> str:
    try:
        return str(error)
    except Exception:
        return type(error).__name__


def _describe_value(value: object) -> str:
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError, RecursionError):
        pass
    try:
        return repr(value)
    except Exception:
        return object.__repr__(value)


def classify_error(error: object) -> TaskError:
    match error:
        case ModelCallError():
            return APICallError(
                url=error.url,
                is_retryable=error.is_retryable,
                message=str(error),
                request_body_values=error.request_body_values,
                response_headers=dict(error.response_headers),
            )
        case BaseException() if (parsed := _api_call_error_from_message(_safe_str(error))):
            return parsed
        case InvalidToolInputError(tool_name=tool_name):
            return InternalError(
                f'Invalid arguments provided to tool "{tool_name}". Please try again.'
            )
        case NoSuchToolError(tool_name=tool_name):
            return InternalError(f"{tool_name} is not a valid tool.")
        case StepAbortedError() | asyncio.CancelledError():
            return AbortError(_safe_str(error) or "The operation was aborted.")
        case BaseException():
            return InternalError(_safe_str(error) or type(error).__name__)
        case _:
            return InternalError(
                f"Something went wrong. Please try again: {_describe_value(error)}"
            )
