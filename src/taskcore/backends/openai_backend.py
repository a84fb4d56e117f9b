from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import openai
import pydantic

from taskcore.abort import AbortSignal
from taskcore.backends.base import ModelBackend, StepEvent, StepFinish
from taskcore.exceptions import (
    BackendExecutionError,
    InvalidToolInputError,
    ModelCallError,
    NoSuchToolError,
)
from taskcore.models import (
    FinishReason,
    Message,
    Part,
    StepStartPart,
    TextPart,
    ToolPart,
)
from taskcore.tools import ToolSpec

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 409, 429}

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


def _split_steps(parts: list[Part]) -> list[list[Part]]:
    steps: list[list[Part]] = [[]]
    for part in parts:
        if isinstance(part, StepStartPart):
            if steps[-1]:
                steps.append([])
            continue
        steps[-1].append(part)
    return [step for step in steps if step]


def _tool_result_content(part: ToolPart) -> str:
    if part.state == "output-available":
        return json.dumps(part.output, ensure_ascii=False)
    if part.state == "output-error":
        return json.dumps({"error": part.error_text}, ensure_ascii=False)
    return json.dumps({"status": part.state})


def to_chat_messages(system_prompt: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Flatten task messages into chat-completions messages.

    Assistant messages are split at ``step-start`` so every step becomes one
    assistant turn followed by the results of its tool calls.
    """
    chat: list[dict[str, Any]] = []
    if system_prompt:
        chat.append({"role": "system", "content": system_prompt})

    for message in messages:
        if message.role == "user":
            text = "\n\n".join(part.text for part in message.parts if isinstance(part, TextPart))
            chat.append({"role": "user", "content": text})
            continue

        for step in _split_steps(message.parts):
            text = "".join(part.text for part in step if isinstance(part, TextPart))
            tool_parts = [part for part in step if isinstance(part, ToolPart)]
            if not text and not tool_parts:
                continue
            turn: dict[str, Any] = {"role": "assistant", "content": text or None}
            if tool_parts:
                turn["tool_calls"] = [
                    {
                        "id": part.tool_call_id,
                        "type": "function",
                        "function": {
                            "name": part.tool_name,
                            "arguments": json.dumps(part.input or {}, ensure_ascii=False),
                        },
                    }
                    for part in tool_parts
                ]
            chat.append(turn)
            for part in tool_parts:
                chat.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "content": _tool_result_content(part),
                    }
                )
    return chat


def to_chat_tools(tools: list[ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }
        for tool in tools
    ]


def map_api_error(exc: openai.APIError, request_body: dict[str, Any]) -> BackendExecutionError:
    url = str(exc.request.url) if getattr(exc, "request", None) is not None else ""
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        return ModelCallError(
            exc.message,
            url=url,
            is_retryable=status in RETRYABLE_STATUS_CODES or status >= 500,
            request_body_values=request_body,
            response_headers=dict(exc.response.headers),
            status_code=status,
            backend="openai",
        )
    if isinstance(exc, openai.APIConnectionError):
        return ModelCallError(
            exc.message,
            url=url,
            is_retryable=True,
            request_body_values=request_body,
            backend="openai",
        )
    return BackendExecutionError(str(exc), backend="openai", retriable=False)


class OpenAIBackend(ModelBackend):
    """Chat-completions adapter built on the ``openai`` SDK."""

    def __init__(
        self,
        *,
        model: str = "gpt-4.1",
        system_prompt: str = "",
        base_url: str | None = None,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.system_prompt = system_prompt
        self.base_url = base_url
        self._client = client

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            try:
                self._client = openai.AsyncOpenAI(base_url=self.base_url)
            except openai.OpenAIError as exc:
                raise BackendExecutionError(
                    f"OpenAI client unavailable: {exc}", backend="openai", retriable=False
                ) from exc
        return self._client

    def build_request(self, messages: list[Message], tools: list[ToolSpec]) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": self.model,
            "messages": to_chat_messages(self.system_prompt, messages),
        }
        if tools:
            request["tools"] = to_chat_tools(tools)
        return request

    @staticmethod
    def parse_choice(choice: Any, tools: dict[str, ToolSpec]) -> list[Part]:
        parts: list[Part] = []
        message = choice.message
        if message.content:
            parts.append(TextPart(text=message.content))
        for call in message.tool_calls or []:
            name = call.function.name
            spec = tools.get(name)
            if spec is None:
                raise NoSuchToolError(name)
            try:
                arguments = json.loads(call.function.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise InvalidToolInputError(name, f"Malformed JSON arguments: {exc}") from exc
            if not isinstance(arguments, dict):
                raise InvalidToolInputError(name, "Tool arguments must be a JSON object.")
            try:
                spec.input_model.model_validate(arguments)
            except pydantic.ValidationError as exc:
                raise InvalidToolInputError(name, f"Invalid arguments for {name}: {exc}") from exc
            parts.append(ToolPart(tool_name=name, tool_call_id=call.id, input=arguments))
        return parts

    async def _create(self, request: dict[str, Any]) -> Any:
        try:
            return await self.client.chat.completions.create(**request)
        except openai.APIError as exc:
            raise map_api_error(exc, request) from exc

    async def stream_step(
        self,
        messages: list[Message],
        tools: list[ToolSpec],
        abort_signal: AbortSignal | None = None,
    ) -> AsyncIterator[StepEvent]:
        request = self.build_request(messages, tools)
        if abort_signal is not None:
            response = await abort_signal.guard(self._create(request))
        else:
            response = await self._create(request)

        if not response.choices:
            raise BackendExecutionError("Model returned no choices.", backend="openai")
        choice = response.choices[0]
        for part in self.parse_choice(choice, {tool.name: tool for tool in tools}):
            yield part

        usage = response.usage.model_dump() if response.usage is not None else {}
        finish_reason = FINISH_REASONS.get(choice.finish_reason or "", "other")
        logger.debug("Model step finished model=%s reason=%s", self.model, finish_reason)
        yield StepFinish(finish_reason=finish_reason, usage=usage)
