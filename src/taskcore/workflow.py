from __future__ import annotations

import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from taskcore.abort import AbortSignal
from taskcore.exceptions import StepAbortedError
from taskcore.models import Message, Part, TextPart

logger = logging.getLogger(__name__)

WORKFLOW_PATTERN = re.compile(r"<workflow([^>]*)>(.*?)</workflow>", re.DOTALL)
BASH_COMMAND_PATTERN = re.compile(r"!`(.+?)`")
SYSTEM_REMINDER_OPEN = "<system-reminder>"
SYSTEM_REMINDER_CLOSE = "</system-reminder>"
BASH_OUTPUTS_HEADER = "Bash command outputs:"


@dataclass(slots=True)
class CommandOutput:
    output: str
    error: str | None = None


@dataclass(slots=True)
class CommandResult:
    command: str
    output: str
    error: str | None = None

    def render(self) -> str:
        rendered = f"$ {self.command}"
        if self.output:
            rendered += f"\n{self.output}"
        if self.error:
            rendered += f"\nERROR: {self.error}"
        return rendered


CommandExecutor = Callable[[str, AbortSignal | None], Awaitable[CommandOutput]]


def create_system_reminder(content: str) -> str:
    return f"{SYSTEM_REMINDER_OPEN}{content}{SYSTEM_REMINDER_CLOSE}"


def is_workflow_text_part(part: Part) -> bool:
    return isinstance(part, TextPart) and WORKFLOW_PATTERN.search(part.text) is not None


def is_bash_outputs_part(part: Part) -> bool:
    return isinstance(part, TextPart) and part.text.startswith(
        SYSTEM_REMINDER_OPEN + BASH_OUTPUTS_HEADER
    )


def extract_bash_commands(content: str) -> list[str]:
    """Commands written as ``!`cmd` `` inside a workflow body."""
    commands: list[str] = []
    for match in BASH_COMMAND_PATTERN.finditer(content):
        command = match.group(1).strip()
        if command:
            commands.append(command)
    return commands


def extract_workflow_bash_commands(message: Message) -> list[str]:
    commands: list[str] = []
    for part in message.parts:
        if not isinstance(part, TextPart):
            continue
        for match in WORKFLOW_PATTERN.finditer(part.text):
            commands.extend(extract_bash_commands(match.group(2)))
    return commands


async def execute_workflow_bash_commands(
    message: Message,
    executor: CommandExecutor,
    abort_signal: AbortSignal | None = None,
) -> list[CommandResult]:
    commands = extract_workflow_bash_commands(message)
    results: list[CommandResult] = []
    for command in commands:
        if abort_signal is not None and abort_signal.aborted:
            break
        try:
            outcome = await executor(command, abort_signal)
        except StepAbortedError as exc:
            results.append(CommandResult(command=command, output="", error=str(exc)))
            break
        except Exception as exc:
            logger.warning("Workflow command failed command=%s error=%s", command, exc)
            results.append(CommandResult(command=command, output="", error=str(exc)))
            continue
        results.append(CommandResult(command=command, output=outcome.output, error=outcome.error))
    return results


def render_bash_outputs(results: list[CommandResult]) -> str:
    body = "\n\n".join(result.render() for result in results)
    return create_system_reminder(f"{BASH_OUTPUTS_HEADER}\n{body}")


def inject_bash_outputs(message: Message, results: list[CommandResult]) -> None:
    """Insert the outputs right before the workflow text that references them."""
    if not results:
        return
    reminder = TextPart(text=render_bash_outputs(results))
    index = next(
        (position for position, part in enumerate(message.parts) if is_workflow_text_part(part)),
        0,
    )
    message.parts.insert(index, reminder)
