"""
Ollama provider.

Streams responses from a local Ollama instance via its ``/api/chat`` endpoint.
Supports tool calling when the Ollama model advertises it.

Ollama streams newline-delimited JSON objects; each line is a complete
object and the last one carries ``"done": true`` plus the usage counters.
Tool calls arrive whole and without ids.

Dependencies: ``httpx``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from modelbridge.llm.providers.base import (
    Provider,
    TranslationState,
    new_call_id,
    result_text,
)
from modelbridge.llm.schema_rules import OLLAMA_RULES
from modelbridge.llm.types import (
    AssembledTurn,
    FinishReason,
    GenerationOptions,
    MessageEnd,
    Part,
    Role,
    StreamEvent,
    Text,
    TextDelta,
    ToolCall,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolSchema,
    Turn,
    UsageMetadata,
)
from modelbridge.types import Stage

logger = logging.getLogger(__name__)

# Ollama context sizes vary by model.  Default to a reasonable value; users
# can override via config.
DEFAULT_MAX_CONTEXT = 8192


class OllamaProvider(Provider):
    """
    Provider for a local `Ollama <https://ollama.com>`_ instance.

    Parameters
    ----------
    model:
        Model tag, e.g. ``"llama3"`` or ``"mistral"``.
    base_url:
        Base URL of the Ollama HTTP API (e.g. ``"http://localhost:11434"``).
    """

    backend = "ollama"
    default_base_url = "http://localhost:11434"
    schema_rules = OLLAMA_RULES
    requires_api_key = False

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    @staticmethod
    def map_done_reason(done_reason: str | None) -> FinishReason:
        if not done_reason or done_reason == "stop":
            return FinishReason.STOP
        if done_reason == "length":
            return FinishReason.MAX_OUTPUT_REACHED
        return FinishReason.OTHER

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _convert_turn(self, turn: Turn, state: TranslationState) -> list[dict]:
        if turn.role is Role.ASSISTANT:
            calls = []
            for call in turn.tool_calls:
                state.issue(call)
                # Ollama expects a dict, not a JSON string.
                calls.append({"function": {"name": call.name, "arguments": call.arguments}})
            if not turn.text and not calls:
                return []
            message: dict = {"role": "assistant", "content": turn.text}
            if calls:
                message["tool_calls"] = calls
            return [message]

        wire: list[dict] = []
        for result in turn.tool_results:
            if state.accept(result):
                wire.append(
                    {
                        "role": "tool",
                        "content": result_text(result),
                        "tool_name": state.name_for(result.tool_call_id),
                    }
                )
        if turn.text:
            wire.append({"role": "user", "content": turn.text})
        return wire

    def _convert_tool(self, schema: ToolSchema, parameters: dict) -> dict:
        return {
            "type": "function",
            "function": {
                "name": schema.name,
                "description": schema.description,
                "parameters": parameters,
            },
        }

    def _build_body(
        self,
        messages: list[dict],
        system: str | None,
        tools: list[dict],
        options: GenerationOptions,
        stream: bool,
    ) -> dict:
        if system:
            messages = [{"role": "system", "content": system}, *messages]
        body: dict = {
            "model": options.model or self._model,
            "messages": messages,
            "stream": stream,
        }
        model_options: dict = {}
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            model_options["num_predict"] = options.max_output_tokens
        if options.top_p is not None:
            model_options["top_p"] = options.top_p
        if options.top_k is not None:
            model_options["top_k"] = options.top_k
        if options.stop_sequences:
            model_options["stop"] = list(options.stop_sequences)
        if model_options:
            body["options"] = model_options
        if tools:
            body["tools"] = tools
        return body

    def _path(self, stream: bool, options: GenerationOptions) -> str:
        return "/api/chat"

    # ------------------------------------------------------------------
    # Responses
    # ------------------------------------------------------------------

    def _message_parts(self, data: dict) -> list[Part]:
        message = data.get("message") or {}
        parts: list[Part] = []
        if message.get("content"):
            parts.append(Text(message["content"]))
        for tc in message.get("tool_calls") or []:
            func = tc.get("function") or {}
            arguments = func.get("arguments") or {}
            if isinstance(arguments, str):
                try:
                    arguments = json.loads(arguments)
                except json.JSONDecodeError:
                    logger.warning("Ollama: unparsable tool arguments: %s", arguments[:200])
                    arguments = {}
            parts.append(
                ToolCall(
                    id=tc.get("id") or new_call_id("ollama_call"),
                    name=func.get("name", ""),
                    arguments=arguments,
                )
            )
        return parts

    def parse_response(self, data: dict) -> AssembledTurn:
        if data.get("error"):
            raise self._protocol_error(f"error body: {data['error']!r}")
        if "message" not in data:
            raise self._protocol_error("response has no message")
        return AssembledTurn(
            turn=Turn(Role.ASSISTANT, tuple(self._message_parts(data))),
            finish_reason=self.map_done_reason(data.get("done_reason")),
            usage=_usage(data),
            provider=self.name,
            model=data.get("model"),
            metadata={"done_reason": data.get("done_reason")},
        )

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        async for data in self.iter_ndjson(response):
            if data.get("error"):
                raise self._protocol_error(f"stream error: {data['error']!r}", Stage.STREAM)

            for part in self._message_parts(data):
                if isinstance(part, Text):
                    yield TextDelta(part.content)
                else:
                    yield ToolCallStart(part.id, part.name)
                    yield ToolCallArgumentDelta(part.id, json.dumps(part.arguments))
                    yield ToolCallEnd(part.id)

            if data.get("done"):
                yield MessageEnd(self.map_done_reason(data.get("done_reason")), _usage(data))
                return


def _usage(data: dict) -> UsageMetadata:
    return UsageMetadata.from_counts(data.get("prompt_eval_count"), data.get("eval_count"))
