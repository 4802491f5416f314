"""
Anthropic Messages API provider.

Speaks ``POST /v1/messages`` directly over ``httpx``; no vendor SDK needed.
Streaming uses the block-start/delta/stop event family::

    message_start
    content_block_start   (text | tool_use with id + name)
    content_block_delta   (text_delta | input_json_delta)
    content_block_stop
    message_delta         (stop_reason, output usage)
    message_stop

Content blocks are keyed by ``index`` on the wire; the parser maps each
index to the tool-use id announced in its ``content_block_start``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from modelbridge.llm.providers.base import (
    Provider,
    TranslationState,
    result_text,
)
from modelbridge.llm.schema_rules import ANTHROPIC_RULES
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
    ToolResult,
    ToolSchema,
    Turn,
    UsageMetadata,
)
from modelbridge.types import Stage, TransientNetworkError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.STOP,
    "pause_turn": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_OUTPUT_REACHED,
    "refusal": FinishReason.CONTENT_FILTERED,
    "content_filtered": FinishReason.CONTENT_FILTERED,
}

_TRANSIENT_ERRORS = {"overloaded_error", "api_error", "rate_limit_error", "timeout_error"}


class AnthropicProvider(Provider):
    """
    Provider for the Anthropic Messages API.

    Parameters
    ----------
    model:
        Model identifier, e.g. ``"claude-sonnet-4-20250514"``.
    api_key:
        Sent as ``x-api-key``.  Required.
    base_url:
        Override for proxies and gateways.
    """

    backend = "anthropic"
    default_base_url = "https://api.anthropic.com"
    schema_rules = ANTHROPIC_RULES

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["x-api-key"] = self._api_key
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    @staticmethod
    def map_stop_reason(stop_reason: str | None) -> FinishReason:
        if not stop_reason:
            return FinishReason.STOP
        return _STOP_REASONS.get(stop_reason, FinishReason.OTHER)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _convert_turn(self, turn: Turn, state: TranslationState) -> list[dict]:
        results: list[dict] = []
        blocks: list[dict] = []
        for part in turn.parts:
            if isinstance(part, Text):
                # Empty text blocks are rejected upstream.
                if part.content:
                    blocks.append({"type": "text", "text": part.content})
            elif isinstance(part, ToolCall):
                state.issue(part)
                blocks.append(
                    {"type": "tool_use", "id": part.id, "name": part.name, "input": part.arguments}
                )
            elif isinstance(part, ToolResult) and state.accept(part):
                block = {
                    "type": "tool_result",
                    "tool_use_id": part.tool_call_id,
                    "content": result_text(part),
                }
                if part.is_error:
                    block["is_error"] = True
                results.append(block)

        # tool_result blocks must lead the user message.
        blocks = results + blocks
        if not blocks:
            return []
        if len(blocks) == 1 and blocks[0]["type"] == "text":
            return [{"role": turn.role.value, "content": blocks[0]["text"]}]
        return [{"role": turn.role.value, "content": blocks}]

    def _convert_tool(self, schema: ToolSchema, parameters: dict) -> dict:
        return {
            "name": schema.name,
            "description": schema.description,
            "input_schema": parameters,
        }

    def _build_body(
        self,
        messages: list[dict],
        system: str | None,
        tools: list[dict],
        options: GenerationOptions,
        stream: bool,
    ) -> dict:
        body: dict = {
            "model": options.model or self._model,
            "max_tokens": options.max_output_tokens or self._max_output,
            "messages": messages,
            "stream": stream,
        }
        if system:
            body["system"] = system
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.top_p is not None:
            body["top_p"] = options.top_p
        if options.top_k is not None:
            body["top_k"] = options.top_k
        if options.stop_sequences:
            body["stop_sequences"] = list(options.stop_sequences)
        if tools:
            body["tools"] = tools
        return body

    def _path(self, stream: bool, options: GenerationOptions) -> str:
        return "/v1/messages"

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def parse_response(self, data: dict) -> AssembledTurn:
        if data.get("type") == "error":
            error = data.get("error") or {}
            raise self._protocol_error(f"{error.get('type')}: {error.get('message')}")
        content = data.get("content")
        if not isinstance(content, list):
            raise self._protocol_error("response has no content list")

        parts: list[Part] = []
        for block in content:
            block_type = block.get("type")
            if block_type == "text":
                parts.append(Text(block.get("text", "")))
            elif block_type == "tool_use":
                if not block.get("id") or not block.get("name"):
                    raise self._protocol_error(f"tool_use block missing id or name: {block!r}")
                parts.append(
                    ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {})
                )

        usage = data.get("usage") or {}
        return AssembledTurn(
            turn=Turn(Role.ASSISTANT, tuple(parts)),
            finish_reason=self.map_stop_reason(data.get("stop_reason")),
            usage=UsageMetadata.from_counts(usage.get("input_tokens"), usage.get("output_tokens")),
            provider=self.name,
            model=data.get("model"),
            metadata={"id": data.get("id"), "stop_reason": data.get("stop_reason")},
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        index_ids: dict[int, str] = {}
        prompt_units: int | None = None
        completion_units: int | None = None
        stop_reason: str | None = None

        async for data in self.iter_sse_data(response):
            kind = data.get("type")

            if kind == "message_start":
                usage = (data.get("message") or {}).get("usage") or {}
                prompt_units = usage.get("input_tokens", prompt_units)
                completion_units = usage.get("output_tokens", completion_units)

            elif kind == "content_block_start":
                index = data.get("index", 0)
                block = data.get("content_block") or {}
                if block.get("type") == "tool_use":
                    call_id = block.get("id")
                    if not call_id:
                        raise self._protocol_error("tool_use block without id", Stage.STREAM)
                    index_ids[index] = call_id
                    yield ToolCallStart(call_id, block.get("name", ""))
                    # Some gateways send the whole input up front.
                    if block.get("input"):
                        yield ToolCallArgumentDelta(call_id, json.dumps(block["input"]))
                elif block.get("type") == "text" and block.get("text"):
                    yield TextDelta(block["text"])

            elif kind == "content_block_delta":
                index = data.get("index", 0)
                delta = data.get("delta") or {}
                delta_type = delta.get("type")
                if delta_type == "text_delta":
                    yield TextDelta(delta.get("text", ""))
                elif delta_type == "input_json_delta":
                    call_id = index_ids.get(index, f"block-{index}")
                    yield ToolCallArgumentDelta(call_id, delta.get("partial_json", ""))

            elif kind == "content_block_stop":
                call_id = index_ids.pop(data.get("index", 0), None)
                if call_id is not None:
                    yield ToolCallEnd(call_id)

            elif kind == "message_delta":
                stop_reason = (data.get("delta") or {}).get("stop_reason") or stop_reason
                usage = data.get("usage") or {}
                if usage.get("input_tokens"):
                    prompt_units = usage["input_tokens"]
                completion_units = usage.get("output_tokens", completion_units)

            elif kind == "message_stop":
                yield MessageEnd(
                    self.map_stop_reason(stop_reason),
                    UsageMetadata.from_counts(prompt_units, completion_units),
                )
                return

            elif kind == "error":
                error = data.get("error") or {}
                message = f"{error.get('type')}: {error.get('message')}"
                if error.get("type") in _TRANSIENT_ERRORS:
                    raise TransientNetworkError(message, backend=self.name, stage=Stage.STREAM)
                raise self._protocol_error(message, Stage.STREAM)
