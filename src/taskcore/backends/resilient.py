from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from taskcore.abort import AbortSignal
from taskcore.backends.base import ModelBackend, StepEvent
from taskcore.exceptions import BackendExecutionError, BackendTimeoutError, TaskcoreError
from taskcore.models import Message
from taskcore.tools import ToolSpec

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientBackend(ModelBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    A step is buffered completely before its events are re-yielded, so a
    retried attempt never leaks partial output. When every attempt fails the
    last error is raised unchanged.
    """

    def __init__(
        self,
        primary_name: str,
        primary_backend: ModelBackend,
        fallback_name: str | None = None,
        fallback_backend: ModelBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name or primary_name
        self.fallback_backend = fallback_backend or primary_backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        logger.debug("Backend event %s", event)
        if self.event_hook:
            self.event_hook(event)

    async def _collect_events(
        self,
        backend: ModelBackend,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None,
    ) -> list[StepEvent]:
        async def _consume() -> list[StepEvent]:
            events: list[StepEvent] = []
            async for event in backend.stream_step(messages, tools, abort_signal):
                events.append(event)
            return events

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None,
    ) -> list[StepEvent]:
        attempts: list[tuple[str, ModelBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        last_error: Exception | None = None
        for index, (backend_name, backend) in enumerate(attempts):
            if index > 0:
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    if abort_signal is not None:
                        await abort_signal.guard(asyncio.sleep(delay))
                    else:
                        await asyncio.sleep(delay)
                if abort_signal is not None:
                    abort_signal.raise_if_aborted()
                try:
                    events = await self._collect_events(backend, messages, tools, abort_signal)
                    if backend_name != self.primary_name:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend_name,
                                "attempt": attempt,
                            }
                        )
                    return events
                except BackendExecutionError as exc:
                    last_error = exc
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                except TaskcoreError:
                    # aborts and tool-call errors are not backend failures
                    raise
                except Exception as exc:
                    last_error = exc
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )

        assert last_error is not None
        logger.warning("All backend attempts failed error=%s", last_error)
        raise last_error

    async def stream_step(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[StepEvent]:
        events = await self._execute_attempts(messages, tools, abort_signal)
        for event in events:
            yield event
