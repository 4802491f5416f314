"""Abstract base class for LLM providers."""

from __future__ import annotations

import codecs
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

import httpx
import jsonschema

from modelbridge.llm.client_pool import Credentials
from modelbridge.llm.repair import ConversationRepairer
from modelbridge.llm.retry import classify_exception, classify_status
from modelbridge.llm.schema_cache import SchemaCache
from modelbridge.llm.schema_rules import SchemaRuleset
from modelbridge.llm.token_counter import TokenCounter
from modelbridge.llm.types import (
    AssembledTurn,
    Conversation,
    GenerationOptions,
    Role,
    StreamEvent,
    ToolCall,
    ToolResult,
    ToolSchema,
    Turn,
)
from modelbridge.types import (
    AuthError,
    Stage,
    TranslationError,
    UpstreamProtocolError,
)

logger = logging.getLogger(__name__)


@dataclass
class ProviderRequest:
    """A translated, ready-to-send wire request."""

    backend: str
    path: str
    body: dict
    stream: bool
    method: str = "POST"
    params: dict = field(default_factory=dict)
    dropped_tool_result_ids: tuple[str, ...] = ()
    discarded_history: bool = False


class TranslationState:
    """
    Tool-call bookkeeping while walking a conversation in order.

    A ``ToolResult`` is only sendable if its id was issued by a ``ToolCall``
    seen earlier in the same walk.
    """

    def __init__(self, backend: str) -> None:
        self.backend = backend
        self.issued: dict[str, str] = {}
        self.dropped: list[str] = []

    def issue(self, call: ToolCall) -> None:
        if not call.id:
            raise TranslationError(
                f"tool call {call.name!r} has no id", backend=self.backend, stage=Stage.TRANSLATE
            )
        self.issued[call.id] = call.name

    def accept(self, result: ToolResult) -> bool:
        if result.tool_call_id in self.issued:
            return True
        self.dropped.append(result.tool_call_id)
        logger.warning(
            "%s: dropping orphaned tool result %s (no matching tool call)",
            self.backend,
            result.tool_call_id,
        )
        return False

    def name_for(self, call_id: str) -> str:
        return self.issued[call_id]


def result_text(result: ToolResult) -> str:
    """Render a tool result payload as the string most backends expect."""
    if isinstance(result.payload, str):
        return result.payload
    return json.dumps(result.payload)


def new_call_id(prefix: str = "call") -> str:
    """Id for a tool call whose backend did not assign one."""
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


class Provider(ABC):
    """
    A provider speaks one backend's wire protocol.

    It owns the request translator (``build_request``), the response
    translator (``parse_response``) and the stream event parser
    (``iter_events``).  Transport is done on a pooled ``httpx.AsyncClient``
    supplied by the caller.

    Subclasses set ``backend``, ``default_base_url`` and ``schema_rules`` and
    implement the abstract hooks.
    """

    backend: str = ""
    default_base_url: str = ""
    schema_rules: SchemaRuleset = SchemaRuleset()
    requires_api_key: bool = True

    def __init__(
        self,
        model: str,
        api_key: str = "",
        base_url: str | None = None,
        *,
        name: str | None = None,
        timeout: float = 120.0,
        max_context: int = 128_000,
        max_output: int = 4096,
        schema_cache: SchemaCache | None = None,
        repairer: ConversationRepairer | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._name = name or self.backend
        self._timeout = timeout
        self._max_context = max_context
        self._max_output = max_output
        self._schema_cache = schema_cache if schema_cache is not None else SchemaCache()
        self._repairer = repairer or ConversationRepairer()
        self._counter = TokenCounter(model)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return self._model

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def credentials(self) -> Credentials:
        return Credentials(api_key=self._api_key)

    @property
    def max_context_tokens(self) -> int:
        return self._max_context

    @property
    def max_output_tokens(self) -> int:
        return self._max_output

    def headers(self) -> dict[str, str]:
        """Headers installed on the pooled client (auth, versioning)."""
        return {"Content-Type": "application/json"}

    def count_tokens(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
    ) -> int:
        return self._counter.count_conversation(conversation, tools)

    # ------------------------------------------------------------------
    # Request translation
    # ------------------------------------------------------------------

    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
        options: GenerationOptions | None = None,
        *,
        stream: bool = True,
    ) -> ProviderRequest:
        """
        Translate *conversation* into this backend's wire request.

        Raises ``TranslationError`` for malformed input and ``AuthError``
        when the backend needs an API key and none is configured.
        """
        options = options or GenerationOptions()
        if self.requires_api_key and not self._api_key:
            raise AuthError("no API key configured", backend=self.name, stage=Stage.TRANSLATE)

        repair = self._repairer.repair(conversation)
        conversation = repair.conversation

        system = self.system_instruction(conversation, options)
        state = TranslationState(self.name)
        messages: list[dict] = []
        for turn in conversation:
            if turn.role is Role.SYSTEM:
                continue
            self._check_roles(turn)
            messages.extend(self._convert_turn(turn, state))

        if not messages:
            raise TranslationError(
                "conversation has no sendable messages", backend=self.name, stage=Stage.TRANSLATE
            )

        tool_docs = self.convert_tools(tools) if tools else []
        body = self._build_body(messages, system, tool_docs, options, stream)

        logger.info(
            "REQUEST: backend=%s model=%s messages=%d tools=%d dropped=%d discarded=%s",
            self.name,
            options.model or self._model,
            len(messages),
            len(tool_docs),
            len(state.dropped),
            repair.discard_history,
        )
        return ProviderRequest(
            backend=self.name,
            path=self._path(stream, options),
            body=body,
            stream=stream,
            params=self._params(stream),
            dropped_tool_result_ids=tuple(state.dropped),
            discarded_history=repair.discard_history,
        )

    def _check_roles(self, turn: Turn) -> None:
        for part in turn.parts:
            if isinstance(part, ToolCall) and turn.role is not Role.ASSISTANT:
                raise TranslationError(
                    f"tool call {part.id!r} in a {turn.role.value} turn",
                    backend=self.name,
                    stage=Stage.TRANSLATE,
                )
            if isinstance(part, ToolResult) and turn.role is not Role.USER:
                raise TranslationError(
                    f"tool result {part.tool_call_id!r} in a {turn.role.value} turn",
                    backend=self.name,
                    stage=Stage.TRANSLATE,
                )

    def system_instruction(
        self, conversation: Conversation, options: GenerationOptions
    ) -> str | None:
        """System turns win; otherwise fall back to the options."""
        texts = [t.text for t in conversation if t.role is Role.SYSTEM and t.text]
        if texts:
            return "\n".join(texts)
        return options.system_instruction or None

    def convert_tools(self, tools: Sequence[ToolSchema]) -> list[dict]:
        return self._schema_cache.get_or_translate(self.name, list(tools), self._translate_tools)

    def _translate_tools(self, tools: Sequence[ToolSchema]) -> list[dict]:
        converted: list[dict] = []
        for schema in tools:
            if not schema.name:
                raise TranslationError("tool schema has no name", backend=self.name, stage=Stage.TRANSLATE)
            parameters = self.schema_rules.apply(schema.parameters)
            try:
                jsonschema.validators.validator_for(parameters).check_schema(parameters)
            except jsonschema.SchemaError as exc:
                raise TranslationError(
                    f"tool {schema.name!r} has an invalid parameter schema: {exc.message}",
                    backend=self.name,
                    stage=Stage.TRANSLATE,
                ) from exc
            converted.append(self._convert_tool(schema, parameters))
        return converted

    @abstractmethod
    def _convert_turn(self, turn: Turn, state: TranslationState) -> list[dict]:
        """Convert one user/assistant turn into zero or more wire messages."""
        ...

    @abstractmethod
    def _convert_tool(self, schema: ToolSchema, parameters: dict) -> dict:
        """Shape one tool declaration.  *parameters* is already normalized."""
        ...

    @abstractmethod
    def _build_body(
        self,
        messages: list[dict],
        system: str | None,
        tools: list[dict],
        options: GenerationOptions,
        stream: bool,
    ) -> dict:
        ...

    @abstractmethod
    def _path(self, stream: bool, options: GenerationOptions) -> str:
        ...

    def _params(self, stream: bool) -> dict:
        return {}

    # ------------------------------------------------------------------
    # Response translation
    # ------------------------------------------------------------------

    @abstractmethod
    def parse_response(self, data: dict) -> AssembledTurn:
        """Convert a complete (non-streamed) response body."""
        ...

    @abstractmethod
    def iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        """Translate a streaming HTTP response into ``StreamEvent`` objects."""
        ...

    def _protocol_error(self, message: str, stage: Stage = Stage.RESPONSE) -> UpstreamProtocolError:
        return UpstreamProtocolError(message, backend=self.name, stage=stage)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def send(self, client: httpx.AsyncClient, request: ProviderRequest) -> dict:
        """POST a non-streaming request and return the decoded JSON body."""
        try:
            resp = await client.request(
                request.method, request.path, json=request.body, params=request.params or None
            )
        except httpx.HTTPError as exc:
            classified = classify_exception(exc, backend=self.name)
            if classified is None:
                raise
            raise classified from exc

        if resp.status_code >= 400:
            raise classify_status(resp.status_code, resp.text, backend=self.name)
        try:
            data = resp.json()
        except ValueError as exc:
            raise self._protocol_error(f"response is not JSON: {resp.text[:200]!r}") from exc
        if not isinstance(data, dict):
            raise self._protocol_error(f"expected a JSON object, got {type(data).__name__}")
        return data

    async def open_stream(self, client: httpx.AsyncClient, request: ProviderRequest) -> httpx.Response:
        """
        Open a streaming response and check its status.

        The caller owns the returned response and must ``aclose()`` it.
        """
        http_request = client.build_request(
            request.method, request.path, json=request.body, params=request.params or None
        )
        try:
            response = await client.send(http_request, stream=True)
        except httpx.HTTPError as exc:
            classified = classify_exception(exc, backend=self.name)
            if classified is None:
                raise
            raise classified from exc

        if response.status_code >= 400:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            raise classify_status(response.status_code, body, backend=self.name)
        return response

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    async def _iter_lines(self, response: httpx.Response) -> AsyncIterator[str]:
        # Multi-byte characters may straddle chunk boundaries.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        try:
            async for raw_bytes in response.aiter_bytes():
                buffer += decoder.decode(raw_bytes)
                while "\n" in buffer:
                    line, buffer = buffer.split("\n", 1)
                    yield line.rstrip("\r")
        except httpx.HTTPError as exc:
            classified = classify_exception(exc, backend=self.name, stage=Stage.STREAM)
            if classified is None:
                raise
            raise classified from exc
        buffer += decoder.decode(b"", final=True)
        if buffer.strip():
            yield buffer.rstrip("\r")

    async def iter_sse_data(self, response: httpx.Response) -> AsyncIterator[Any]:
        """
        Parse Server-Sent Events from the response byte stream.

        Each SSE event has the form::

            event: name\\n
            data: {json}\\n\\n

        Only ``data`` lines are decoded; the sentinel ``data: [DONE]`` ends
        the stream.
        """
        async for line in self._iter_lines(response):
            if not line.startswith("data:"):
                continue
            data_str = line[len("data:"):].strip()
            if not data_str:
                continue
            if data_str == "[DONE]":
                return
            try:
                yield json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("%s: failed to parse SSE data: %s", self.name, data_str[:200])

    async def iter_ndjson(self, response: httpx.Response) -> AsyncIterator[Any]:
        """Parse newline-delimited JSON objects from the response stream."""
        async for line in self._iter_lines(response):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                logger.warning("%s: failed to parse line: %s", self.name, line[:200])
