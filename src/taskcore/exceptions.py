from __future__ import annotations

from typing import Any


class TaskcoreError(RuntimeError):
    """Base class for errors raised by taskcore."""


class StoreError(TaskcoreError):
    """Raised when task store operations fail."""


class StepAbortedError(TaskcoreError):
    """Raised when a step, tool call or workflow command is cancelled."""

    def __init__(self, message: str = "The operation was aborted.") -> None:
        super().__init__(message)


class BackendExecutionError(TaskcoreError):
    """Raised when a model backend call fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a model step exceeds the configured timeout."""


class ModelCallError(BackendExecutionError):
    """A failed remote model API call, with request/response context."""

    def __init__(
        self,
        message: str,
        *,
        url: str,
        is_retryable: bool,
        request_body_values: Any = None,
        response_headers: dict[str, str] | None = None,
        status_code: int | None = None,
        backend: str | None = None,
    ) -> None:
        super().__init__(message, backend=backend, retriable=is_retryable)
        self.url = url
        self.is_retryable = is_retryable
        self.request_body_values = request_body_values
        self.response_headers = dict(response_headers or {})
        self.status_code = status_code


class InvalidToolInputError(TaskcoreError):
    """The model produced arguments that do not match a tool's input schema."""

    def __init__(self, tool_name: str, message: str | None = None) -> None:
        super().__init__(message or f"Invalid input for tool {tool_name}")
        self.tool_name = tool_name


class NoSuchToolError(TaskcoreError):
    """The model called a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Model tried to call unavailable tool '{tool_name}'.")
        self.tool_name = tool_name
