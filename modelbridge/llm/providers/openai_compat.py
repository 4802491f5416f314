"""
OpenAI-compatible chat-completion provider.

Works with any endpoint that speaks the OpenAI ``/v1/chat/completions`` wire
protocol -- OpenAI itself, Azure OpenAI, vLLM, LM Studio, LocalAI, etc.

Dependencies: ``httpx`` (async HTTP client).  No ``openai`` SDK needed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

from modelbridge.llm.providers.base import (
    Provider,
    TranslationState,
    new_call_id,
    result_text,
)
from modelbridge.llm.schema_rules import OPENAI_RULES
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
from modelbridge.types import Stage, StreamDataQualityWarning, WarningKind

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": FinishReason.STOP,
    "tool_calls": FinishReason.STOP,
    "function_call": FinishReason.STOP,
    "length": FinishReason.MAX_OUTPUT_REACHED,
    "content_filter": FinishReason.CONTENT_FILTERED,
}


class OpenAICompatProvider(Provider):
    """
    Stream-capable provider for any OpenAI-API-compatible endpoint.

    Parameters
    ----------
    model:
        Model identifier sent in the ``model`` field.
    api_key:
        Bearer token.  Pass ``""`` for unauthenticated local endpoints.
    base_url:
        Base URL of the API, e.g. ``"https://api.openai.com/v1"`` or
        ``"http://localhost:8080/v1"``.
    """

    backend = "openai"
    default_base_url = "https://api.openai.com/v1"
    schema_rules = OPENAI_RULES
    requires_api_key = False

    def headers(self) -> dict[str, str]:
        headers = super().headers()
        headers["Accept"] = "application/json, text/event-stream"
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
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
        if turn.role is Role.ASSISTANT:
            calls = []
            for call in turn.tool_calls:
                state.issue(call)
                calls.append(
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                    }
                )
            text = turn.text
            if not text and not calls:
                return []
            message: dict = {"role": "assistant", "content": text or None}
            if calls:
                message["tool_calls"] = calls
            return [message]

        # Tool results travel as their own role="tool" messages, ahead of
        # whatever the user typed in the same turn.
        wire: list[dict] = []
        for result in turn.tool_results:
            if state.accept(result):
                wire.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_call_id,
                        "content": result_text(result),
                    }
                )
        texts = [p.content for p in turn.parts if isinstance(p, Text) and p.content]
        if len(texts) == 1:
            wire.append({"role": "user", "content": texts[0]})
        elif texts:
            wire.append({"role": "user", "content": [{"type": "text", "text": t} for t in texts]})
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
        if stream:
            body["stream_options"] = {"include_usage": True}
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.max_output_tokens is not None:
            body["max_tokens"] = options.max_output_tokens
        if options.top_p is not None:
            body["top_p"] = options.top_p
        if options.stop_sequences:
            body["stop"] = list(options.stop_sequences)
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        return body

    def _path(self, stream: bool, options: GenerationOptions) -> str:
        return "/chat/completions"

    # ------------------------------------------------------------------
    # Non-streaming response
    # ------------------------------------------------------------------

    def parse_response(self, data: dict) -> AssembledTurn:
        if data.get("error"):
            raise self._protocol_error(f"error body: {data['error']!r}")
        choices = data.get("choices")
        if not choices:
            raise self._protocol_error("response has no choices")

        choice = choices[0]
        message = choice.get("message") or {}
        parts: list[Part] = []
        warnings: list[StreamDataQualityWarning] = []

        if message.get("content"):
            parts.append(Text(message["content"]))
        for raw_tc in message.get("tool_calls") or []:
            func = raw_tc.get("function") or {}
            call_id = raw_tc.get("id") or new_call_id()
            name = func.get("name") or ""
            arguments, warning = self._decode_arguments(call_id, name, func.get("arguments"))
            if warning is not None:
                warnings.append(warning)
            parts.append(ToolCall(id=call_id, name=name, arguments=arguments))

        usage = data.get("usage") or {}
        return AssembledTurn(
            turn=Turn(Role.ASSISTANT, tuple(parts)),
            finish_reason=self.map_finish_reason(choice.get("finish_reason")),
            usage=UsageMetadata.from_counts(
                usage.get("prompt_tokens"), usage.get("completion_tokens")
            ),
            warnings=warnings,
            provider=self.name,
            model=data.get("model"),
            metadata={"id": data.get("id"), "finish_reason": choice.get("finish_reason")},
        )

    def _decode_arguments(
        self, call_id: str, name: str, raw
    ) -> tuple[Any, StreamDataQualityWarning | None]:
        if isinstance(raw, dict):
            return raw, None
        if not raw or not str(raw).strip():
            return {}, None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            warning = StreamDataQualityWarning(
                kind=WarningKind.UNPARSABLE_ARGUMENTS,
                tool_call_id=call_id,
                tool_name=name,
                backend=self.name,
                stage=Stage.RESPONSE,
                detail=f"{exc}: {str(raw)[:200]}",
            )
            logger.warning("%s", warning)
            return {}, warning
        return parsed, None

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """
        Translate chat-completion chunks.

        Tool-call fragments are keyed by ``index`` (0 when a gateway omits
        it).  Name and argument pieces are buffered per call, and a fragment
        whose ``id`` differs from the call open at its index closes that call
        and starts a new one.  Each call's start, argument and end events are
        emitted once it closes, on ``finish_reason`` or at end of stream.
        The usage chunk arrives after ``finish_reason``, so ``MessageEnd`` is
        emitted at ``[DONE]`` (or end of stream).
        """
        calls: dict[int, _PendingCall] = {}
        finish_reason: str | None = None
        usage = UsageMetadata()

        async for data in self.iter_sse_data(response):
            if data.get("error"):
                raise self._protocol_error(f"stream error: {data['error']!r}", Stage.STREAM)

            if data.get("usage"):
                usage = UsageMetadata.from_counts(
                    data["usage"].get("prompt_tokens"), data["usage"].get("completion_tokens")
                )

            choices = data.get("choices")
            if not choices:
                continue
            choice = choices[0]
            delta = choice.get("delta") or {}

            if delta.get("content"):
                yield TextDelta(delta["content"])

            for raw_tc in delta.get("tool_calls") or []:
                idx = raw_tc.get("index", 0)
                func = raw_tc.get("function") or {}
                raw_id = raw_tc.get("id")
                call = calls.get(idx)
                if call is not None and raw_id and raw_id != call.id:
                    for event in call.events(closed=True):
                        yield event
                    call = None
                if call is None:
                    call = calls[idx] = _PendingCall(raw_id or new_call_id())
                if func.get("name"):
                    call.name += func["name"]
                if func.get("arguments"):
                    call.fragments.append(func["arguments"])

            if choice.get("finish_reason"):
                finish_reason = choice["finish_reason"]
                for idx in sorted(calls):
                    for event in calls[idx].events(closed=True):
                        yield event
                calls.clear()

        # Without a finish_reason the calls stay open; MessageEnd closes them
        # as truncated.
        for idx in sorted(calls):
            for event in calls[idx].events(closed=False):
                yield event
        if finish_reason is None:
            yield MessageEnd(FinishReason.OTHER, usage)
        else:
            yield MessageEnd(self.map_finish_reason(finish_reason), usage)


@dataclass
class _PendingCall:
    id: str
    name: str = ""
    fragments: list[str] = field(default_factory=list)

    def events(self, *, closed: bool) -> list[StreamEvent]:
        events: list[StreamEvent] = [ToolCallStart(self.id, self.name)]
        events.extend(ToolCallArgumentDelta(self.id, f) for f in self.fragments)
        if closed:
            events.append(ToolCallEnd(self.id))
        return events
