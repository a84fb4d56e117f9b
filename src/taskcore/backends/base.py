from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from taskcore.abort import AbortSignal
from taskcore.models import FinishReason, Message, Part
from taskcore.tools import ToolSpec


@dataclass(frozen=True, slots=True)
class StepFinish:
    """Last event of a model step."""

    finish_reason: FinishReason
    usage: dict[str, Any] = field(default_factory=dict)


StepEvent = Part | StepFinish


class ModelBackend(ABC):
    @abstractmethod
    def stream_step(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[StepEvent]:
        """Run one model step, yielding the generated parts and then a ``StepFinish``."""
