from __future__ import annotations

import logging

from taskcore.abort import AbortSignal
from taskcore.host import HostEnvironment
from taskcore.models import CheckpointPart, Message, current_step_parts
from taskcore.workflow import (
    execute_workflow_bash_commands,
    inject_bash_outputs,
    is_bash_outputs_part,
)

logger = logging.getLogger(__name__)


def checkpoint_label(message: Message) -> str:
    return f"ckpt-msg-{message.id}"


class StepAugmenter:
    """Prepares the outgoing message list right before a model step.

    Only the last message is touched: a rollback checkpoint is attached first,
    then outputs of workflow bash commands are injected for user messages.
    """

    def __init__(
        self,
        host: HostEnvironment,
        *,
        checkpoints: bool = True,
        workflow_commands: bool = True,
    ) -> None:
        self.host = host
        self.checkpoints = checkpoints
        self.workflow_commands = workflow_commands

    async def augment(self, messages: list[Message], abort_signal: AbortSignal | None) -> None:
        if not messages:
            return
        message = messages[-1]
        if self.checkpoints:
            await self.append_checkpoint(message)
        if self.workflow_commands:
            await self.inject_workflow_outputs(message, abort_signal)

    async def append_checkpoint(self, message: Message) -> CheckpointPart | None:
        if any(isinstance(part, CheckpointPart) for part in current_step_parts(message)):
            return None

        commit = await self.host.create_checkpoint(
            checkpoint_label(message),
            force=message.role == "user",
        )
        if not commit:
            logger.debug("No checkpoint created message=%s", message.id)
            return None

        part = CheckpointPart(commit=commit)
        message.parts.append(part)
        return part

    async def inject_workflow_outputs(
        self,
        message: Message,
        abort_signal: AbortSignal | None,
    ) -> int:
        if message.role != "user":
            return 0
        if any(is_bash_outputs_part(part) for part in message.parts):
            return 0

        results = await execute_workflow_bash_commands(
            message, self.host.execute_command, abort_signal
        )
        inject_bash_outputs(message, results)
        if results:
            logger.info("Injected workflow outputs message=%s count=%d", message.id, len(results))
        return len(results)
