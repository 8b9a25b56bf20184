"""Streaming LLM adapters and factory helpers."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from collections.abc import Awaitable
from collections.abc import Callable
from typing import Any
from typing import Protocol
from typing import runtime_checkable

import openai
from openai import AsyncOpenAI

from chatengine.config import LLMConfig
from chatengine.engine.schemas import CompletionOptions
from chatengine.engine.schemas import StepResult
from chatengine.engine.schemas import ToolCall
from chatengine.engine.schemas import ToolResult
from chatengine.engine.schemas import Usage
from chatengine.errors import ProviderError
from chatengine.models import Source
from chatengine.models import ToolContext
from chatengine.tools.schemas import Tool

logger = logging.getLogger(__name__)

StepCallback = Callable[[StepResult], None]


class CompletionStream:
    """Text deltas of a running completion plus its deferred citations.

    ``sources()`` is only meaningful once ``text_stream`` is exhausted.
    """

    def __init__(
        self,
        text_stream: AsyncIterator[str],
        sources: Callable[[], Awaitable[list[Source]]] | None = None,
    ) -> None:
        self.text_stream = text_stream
        self._sources = sources

    async def sources(self) -> list[Source]:
        if self._sources is None:
            return []
        return await self._sources()


@runtime_checkable
class StreamingLLMAdapter(Protocol):
    """Provider capability consumed by the completion orchestrator."""

    @property
    def model(self) -> str: ...

    def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: dict[str, Tool],
        options: CompletionOptions,
        context: ToolContext,
        on_step: StepCallback,
    ) -> CompletionStream: ...


def _estimate_tokens(text: str) -> int:
    return max(len(text) // 4, 1) if text else 0


class NoopLLMAdapter:
    """Deterministic adapter that echoes the last user message in one step."""

    def __init__(self, reply: str | None = None, *, model: str = "noop") -> None:
        self._reply = reply
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: dict[str, Tool],
        options: CompletionOptions,
        context: ToolContext,
        on_step: StepCallback,
    ) -> CompletionStream:
        del tools, context
        return CompletionStream(self._run(messages, options, on_step))

    async def _run(
        self,
        messages: list[dict[str, Any]],
        options: CompletionOptions,
        on_step: StepCallback,
    ) -> AsyncIterator[str]:
        del options
        text = self._reply
        if text is None:
            last_user = next(
                (m for m in reversed(messages) if m.get("role") == "user"), None
            )
            content = last_user.get("content") if last_user else ""
            text = f"Echo: {content if isinstance(content, str) else json.dumps(content)}"

        for index, word in enumerate(text.split(" ")):
            yield word if index == 0 else f" {word}"

        prompt = "".join(
            m["content"] for m in messages if isinstance(m.get("content"), str)
        )
        on_step(
            StepResult(
                text=text,
                finish_reason="stop",
                usage=Usage(
                    prompt_tokens=_estimate_tokens(prompt),
                    completion_tokens=_estimate_tokens(text),
                ),
            )
        )


class OpenAICompatibleLLMAdapter:
    """OpenAI-compatible streamed chat-completions adapter with a tool loop."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        timeout_seconds: float = 60.0,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        max_steps: int = 5,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._model = model
        self._max_steps = max_steps
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = client or AsyncOpenAI(
            api_key=api_key,
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
        )

    @property
    def model(self) -> str:
        return self._model

    def stream(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: dict[str, Tool],
        options: CompletionOptions,
        context: ToolContext,
        on_step: StepCallback,
    ) -> CompletionStream:
        return CompletionStream(self._run(messages, tools, options, context, on_step))

    def _payload(
        self,
        conversation: list[dict[str, Any]],
        tools: dict[str, Tool],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model or self._model,
            "messages": conversation,
            "temperature": (
                options.temperature
                if options.temperature is not None
                else self._temperature
            ),
            "max_tokens": options.max_tokens or self._max_tokens,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = [tool.to_openai_schema() for tool in tools.values()]
        return payload

    async def _run(
        self,
        messages: list[dict[str, Any]],
        tools: dict[str, Tool],
        options: CompletionOptions,
        context: ToolContext,
        on_step: StepCallback,
    ) -> AsyncIterator[str]:
        conversation = list(messages)
        max_steps = options.max_steps or self._max_steps
        for _ in range(max_steps):
            text_parts: list[str] = []
            pending: dict[int, dict[str, str]] = {}
            finish_reason: str | None = None
            usage = Usage()

            try:
                response = await self._client.chat.completions.create(
                    **self._payload(conversation, tools, options)
                )
                async for chunk in response:
                    if chunk.usage is not None:
                        usage = Usage(
                            prompt_tokens=chunk.usage.prompt_tokens or 0,
                            completion_tokens=chunk.usage.completion_tokens or 0,
                        )
                    if not chunk.choices:
                        continue
                    choice = chunk.choices[0]
                    delta = choice.delta
                    if delta is not None and delta.content:
                        text_parts.append(delta.content)
                        yield delta.content
                    for call in (delta.tool_calls if delta is not None else None) or []:
                        slot = pending.setdefault(
                            call.index, {"id": "", "name": "", "arguments": ""}
                        )
                        if call.id:
                            slot["id"] = call.id
                        if call.function is not None:
                            if call.function.name:
                                slot["name"] += call.function.name
                            if call.function.arguments:
                                slot["arguments"] += call.function.arguments
                    if choice.finish_reason:
                        finish_reason = choice.finish_reason
            except openai.OpenAIError as exc:
                raise ProviderError(f"provider error: {exc}") from exc

            calls = [
                ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=_parse_arguments(slot["arguments"]),
                )
                for index, slot in sorted(pending.items())
            ]
            results: list[ToolResult] = []
            for call in calls:
                tool = tools.get(call.name)
                if tool is None:
                    logger.warning("Model requested unknown tool %s", call.name)
                    output = f"Error: tool {call.name} is not available"
                else:
                    output = await tool.run(call.arguments, context)
                results.append(
                    ToolResult(tool_call_id=call.id, name=call.name, result=output)
                )

            text = "".join(text_parts)
            on_step(
                StepResult(
                    text=text,
                    tool_calls=calls,
                    tool_results=results,
                    finish_reason=finish_reason,
                    usage=usage,
                )
            )
            if not calls:
                return

            conversation.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": pending[index]["arguments"] or "{}",
                            },
                        }
                        for index, call in zip(sorted(pending), calls)
                    ],
                }
            )
            conversation.extend(
                {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.result}
                for r in results
            )
        logger.warning("Stopped tool loop after %d steps", max_steps)


def _parse_arguments(raw: str) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return value if isinstance(value, dict) else {}


def build_llm_adapter(config: LLMConfig) -> StreamingLLMAdapter:
    """Create a concrete adapter from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleLLMAdapter(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            timeout_seconds=config.timeout_seconds,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            max_steps=config.max_steps,
        )
    if provider == "noop":
        return NoopLLMAdapter(model=config.model)
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )
