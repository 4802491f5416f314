"""
Google Gemini ``generateContent`` provider.

Gemini names the assistant role ``model``, carries the system prompt in
``systemInstruction`` and declares tools as ``functionDeclarations``.  A
``functionResponse`` must repeat the function *name*, which is looked up
from the matching call earlier in the conversation.

Function calls arrive whole (never fragmented) and usually without an id,
so one is assigned when the response is translated.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from modelbridge.llm.providers.base import Provider, TranslationState, new_call_id
from modelbridge.llm.schema_rules import GEMINI_RULES
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
from modelbridge.types import Stage

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_OUTPUT_REACHED,
    "SAFETY": FinishReason.CONTENT_FILTERED,
    "RECITATION": FinishReason.CONTENT_FILTERED,
    "BLOCKLIST": FinishReason.CONTENT_FILTERED,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTERED,
    "SPII": FinishReason.CONTENT_FILTERED,
}


class GeminiProvider(Provider):
    """Provider for the Gemini API (``v1beta``)."""

    backend = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com"
    schema_rules = GEMINI_RULES

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["x-goog-api-key"] = self._api_key
        return headers

    @staticmethod
    def map_finish_reason(finish_reason: str | None) -> FinishReason:
        if not finish_reason:
            return FinishReason.STOP
        return _FINISH_REASONS.get(finish_reason, FinishReason.OTHER)

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _convert_turn(self, turn: Turn, state: TranslationState) -> list[dict]:
        parts: list[dict] = []
        for part in turn.parts:
            if isinstance(part, Text):
                if part.content:
                    parts.append({"text": part.content})
            elif isinstance(part, ToolCall):
                state.issue(part)
                parts.append(
                    {"functionCall": {"id": part.id, "name": part.name, "args": part.arguments}}
                )
            elif isinstance(part, ToolResult) and state.accept(part):
                parts.append(
                    {
                        "functionResponse": {
                            "id": part.tool_call_id,
                            "name": state.name_for(part.tool_call_id),
                            "response": _response_payload(part),
                        }
                    }
                )
        if not parts:
            return []
        role = "model" if turn.role is Role.ASSISTANT else "user"
        return [{"role": role, "parts": parts}]

    def _convert_tool(self, schema: ToolSchema, parameters: dict) -> dict:
        return {
            "name": schema.name,
            "description": schema.description,
            "parameters": parameters,
        }

    def _build_body(
        self,
        messages: list[dict],
        system: str | None,
        tools: list[dict],
        options: GenerationOptions,
        stream: bool,
    ) -> dict:
        body: dict = {"contents": messages}
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            body["tools"] = [{"functionDeclarations": tools}]

        config: dict = {}
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            config["maxOutputTokens"] = options.max_output_tokens
        if options.top_p is not None:
            config["topP"] = options.top_p
        if options.top_k is not None:
            config["topK"] = options.top_k
        if options.stop_sequences:
            config["stopSequences"] = list(options.stop_sequences)
        if config:
            body["generationConfig"] = config
        return body

    def _path(self, stream: bool, options: GenerationOptions) -> str:
        method = "streamGenerateContent" if stream else "generateContent"
        return f"/v1beta/models/{options.model or self._model}:{method}"

    def _params(self, stream: bool) -> dict:
        return {"alt": "sse"} if stream else {}

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def parse_response(self, data: dict) -> AssembledTurn:
        candidates = data.get("candidates") or []
        usage = _usage(data)
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                return AssembledTurn(
                    turn=Turn(Role.ASSISTANT, ()),
                    finish_reason=FinishReason.CONTENT_FILTERED,
                    usage=usage,
                    provider=self.name,
                    model=data.get("modelVersion"),
                    metadata={"block_reason": block_reason},
                )
            raise self._protocol_error("response has no candidates")

        candidate = candidates[0]
        parts: list[Part] = []
        for raw in (candidate.get("content") or {}).get("parts") or []:
            parts.extend(self._parse_part(raw))

        return AssembledTurn(
            turn=Turn(Role.ASSISTANT, tuple(parts)),
            finish_reason=self.map_finish_reason(candidate.get("finishReason")),
            usage=usage,
            provider=self.name,
            model=data.get("modelVersion"),
            metadata={"finish_reason": candidate.get("finishReason")},
        )

    def _parse_part(self, raw: dict) -> list[Part]:
        if raw.get("thought"):
            return []
        if "text" in raw:
            return [Text(raw["text"])]
        call = raw.get("functionCall")
        if call:
            if not call.get("name"):
                raise self._protocol_error(f"functionCall without name: {call!r}")
            return [
                ToolCall(
                    id=call.get("id") or new_call_id("gemini"),
                    name=call["name"],
                    arguments=call.get("args") or {},
                )
            ]
        return []

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        finish_reason: FinishReason | None = None
        usage = UsageMetadata()

        async for data in self.iter_sse_data(response):
            if data.get("error"):
                raise self._protocol_error(f"stream error: {data['error']!r}", Stage.STREAM)
            if data.get("usageMetadata"):
                # Gemini reports cumulative counts on each chunk.
                usage = _usage(data)
            if (data.get("promptFeedback") or {}).get("blockReason"):
                finish_reason = FinishReason.CONTENT_FILTERED

            candidates = data.get("candidates") or []
            if not candidates:
                continue
            candidate = candidates[0]
            for raw in (candidate.get("content") or {}).get("parts") or []:
                for part in self._parse_part(raw):
                    if isinstance(part, Text):
                        if part.content:
                            yield TextDelta(part.content)
                    else:
                        yield ToolCallStart(part.id, part.name)
                        yield ToolCallArgumentDelta(part.id, json.dumps(part.arguments))
                        yield ToolCallEnd(part.id)
            if candidate.get("finishReason"):
                finish_reason = self.map_finish_reason(candidate["finishReason"])

        if finish_reason is not None:
            yield MessageEnd(finish_reason, usage)


def _response_payload(result: ToolResult) -> dict:
    if result.is_error:
        return {"error": result.payload}
    if isinstance(result.payload, dict):
        return result.payload
    return {"result": result.payload}


def _usage(data: dict) -> UsageMetadata:
    meta = data.get("usageMetadata") or {}
    return UsageMetadata.from_counts(meta.get("promptTokenCount"), meta.get("candidatesTokenCount"))
