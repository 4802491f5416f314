"""
LLM Router -- manages multiple providers and drives one exchange end to end.

The router is the primary entry point for callers that need an LLM
response.  It:

  1. Translates the conversation with the selected provider.
  2. Sends (or opens the stream) on a pooled client under the retry policy.
  3. Feeds stream events into a ``StreamReassembler`` and yields
     ``StreamChunk`` objects as parts complete.
  4. Produces an ``AssembledTurn`` the caller appends to its conversation.

Tool-call arguments are checked against the declared parameter schema;
mismatches are reported as ``schema_mismatch`` warnings, never raised.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, AsyncIterator, Sequence

import httpx
import jsonschema

from modelbridge.llm.client_pool import ClientPool
from modelbridge.llm.providers.anthropic import AnthropicProvider
from modelbridge.llm.providers.base import Provider, ProviderRequest
from modelbridge.llm.providers.gemini import GeminiProvider
from modelbridge.llm.providers.ollama import OllamaProvider
from modelbridge.llm.providers.openai_compat import OpenAICompatProvider
from modelbridge.llm.reassembler import StreamReassembler
from modelbridge.llm.repair import ConversationRepairer, RepairPolicy
from modelbridge.llm.retry import RetryExecutor, next_or_cancel
from modelbridge.llm.schema_cache import SchemaCache
from modelbridge.llm.types import (
    AssembledTurn,
    Conversation,
    GenerationOptions,
    StreamChunk,
    ToolSchema,
    Turn,
)
from modelbridge.types import (
    ConfigError,
    RequestCancelled,
    Stage,
    StreamDataQualityWarning,
    UpstreamProtocolError,
    WarningKind,
)

if TYPE_CHECKING:
    from modelbridge.config import LLMProviderConfig, ModelBridgeConfig

logger = logging.getLogger(__name__)


class LLMRouter:
    """
    Routes chat requests to a named provider and assembles the response.

    Parameters
    ----------
    client_pool:
        Shared pool of ``httpx.AsyncClient`` objects.
    retry:
        Retry policy for sending requests and opening streams.
    schema_cache, repairer:
        Shared collaborators handed to providers built by ``build_router``.
    """

    def __init__(
        self,
        client_pool: ClientPool | None = None,
        retry: RetryExecutor | None = None,
        schema_cache: SchemaCache | None = None,
        repairer: ConversationRepairer | None = None,
    ) -> None:
        self._providers: dict[str, Provider] = {}
        self._active: str | None = None
        self.client_pool = client_pool or ClientPool()
        self.retry = retry or RetryExecutor()
        self.schema_cache = schema_cache if schema_cache is not None else SchemaCache()
        self.repairer = repairer or ConversationRepairer()

    # ------------------------------------------------------------------
    # Provider management
    # ------------------------------------------------------------------

    def register_provider(self, name: str, provider: Provider) -> None:
        """Register a provider under *name*.  Overwrites any existing entry."""
        self._providers[name] = provider
        if self._active is None:
            self._active = name

    def set_active(self, name: str) -> None:
        """
        Switch the active provider.

        Raises ``KeyError`` if *name* has not been registered.
        """
        if name not in self._providers:
            raise KeyError(
                f"Unknown provider {name!r}. "
                f"Registered: {list(self._providers)}"
            )
        self._active = name

    @property
    def active_name(self) -> str | None:
        """Return the name of the currently active provider (or ``None``)."""
        return self._active

    @property
    def active_provider(self) -> Provider:
        """
        Return the active ``Provider`` instance.

        Raises ``ConfigError`` if no provider is active.
        """
        if self._active is None or self._active not in self._providers:
            raise ConfigError("No active LLM provider")
        return self._providers[self._active]

    @property
    def provider_names(self) -> list[str]:
        """Return the list of registered provider names."""
        return list(self._providers)

    def get_provider(self, name: str | None = None) -> Provider:
        if name is None:
            return self.active_provider
        if name not in self._providers:
            raise ConfigError(
                f"Unknown provider {name!r}. Registered: {list(self._providers)}"
            )
        return self._providers[name]

    def client_for(self, provider: Provider) -> httpx.AsyncClient:
        return self.client_pool.get(
            provider.backend,
            provider.base_url,
            provider.credentials,
            headers=provider.headers(),
            timeout=provider.timeout,
        )

    # ------------------------------------------------------------------
    # Translation
    # ------------------------------------------------------------------

    def build_request(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
        options: GenerationOptions | None = None,
        *,
        stream: bool = True,
        provider: str | None = None,
    ) -> ProviderRequest:
        """Translate without sending (used by ``mb translate``)."""
        return self.get_provider(provider).build_request(
            conversation, tools, options, stream=stream
        )

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
        options: GenerationOptions | None = None,
        *,
        provider: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream ``StreamChunk`` objects from the selected provider.

        Text arrives as soon as the backend sends it; tool calls arrive once
        their arguments are complete.  The last chunk has ``done=True``.
        """
        prov = self.get_provider(provider)
        request = prov.build_request(conversation, tools, options, stream=True)
        async for chunk in self._stream_request(prov, request, tools, cancel):
            yield chunk

    async def _stream_request(
        self,
        prov: Provider,
        request: ProviderRequest,
        tools: Sequence[ToolSchema] | None,
        cancel: asyncio.Event | None,
    ) -> AsyncIterator[StreamChunk]:
        client = self.client_for(prov)
        # Only opening the stream is retried; nothing has been emitted yet.
        response = await self.retry.execute(
            lambda: prov.open_stream(client, request),
            cancel=cancel,
            backend=prov.name,
        )

        reassembler = StreamReassembler(prov.name)
        events = prov.iter_events(response)
        try:
            while not reassembler.finished:
                try:
                    event = await next_or_cancel(events, cancel)
                except StopAsyncIteration:
                    chunk = reassembler.finish()
                except RequestCancelled as exc:
                    exc.backend = exc.backend or prov.name
                    logger.info("%s: stream cancelled, discarding partial turn", prov.name)
                    raise
                else:
                    chunk = reassembler.feed(event)

                if chunk.done and chunk.turn is not None:
                    mismatches = self.check_arguments(prov, chunk.turn, tools, Stage.STREAM)
                    chunk.warnings.extend(mismatches)
                    reassembler.warnings.extend(mismatches)
                if chunk.parts or chunk.warnings or chunk.done:
                    yield chunk
        finally:
            await events.aclose()
            await response.aclose()

    async def complete(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
        options: GenerationOptions | None = None,
        *,
        stream: bool = True,
        provider: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AssembledTurn:
        """
        Run one exchange and return the ``AssembledTurn``.

        This is the convenience method most callers should use.
        """
        prov = self.get_provider(provider)
        options = options or GenerationOptions()
        request = prov.build_request(conversation, tools, options, stream=stream)

        if stream:
            warnings: list[StreamDataQualityWarning] = []
            final: StreamChunk | None = None
            async for chunk in self._stream_request(prov, request, tools, cancel):
                warnings.extend(chunk.warnings)
                if chunk.done:
                    final = chunk
            if final is None or final.turn is None:
                raise UpstreamProtocolError(
                    "stream ended without a final chunk", backend=prov.name, stage=Stage.STREAM
                )
            result = AssembledTurn(
                turn=final.turn,
                finish_reason=final.finish_reason,
                usage=final.usage,
                warnings=warnings,
                provider=prov.name,
                model=options.model or prov.model,
            )
        else:
            client = self.client_for(prov)
            data = await self.retry.execute(
                lambda: prov.send(client, request),
                cancel=cancel,
                backend=prov.name,
            )
            result = prov.parse_response(data)
            result.warnings.extend(self.check_arguments(prov, result.turn, tools, Stage.RESPONSE))

        result.metadata["provider"] = prov.name
        if request.dropped_tool_result_ids:
            result.metadata["dropped_tool_result_ids"] = list(request.dropped_tool_result_ids)
        if request.discarded_history:
            result.metadata["discarded_history"] = True
        return result

    # ------------------------------------------------------------------
    # Argument checking
    # ------------------------------------------------------------------

    def check_arguments(
        self,
        prov: Provider,
        turn: Turn,
        tools: Sequence[ToolSchema] | None,
        stage: Stage,
    ) -> list[StreamDataQualityWarning]:
        """Validate each tool call's arguments against its declared schema."""
        if not tools:
            return []
        by_name = {t.name: t for t in tools}
        warnings: list[StreamDataQualityWarning] = []
        for call in turn.tool_calls:
            schema = by_name.get(call.name)
            if schema is None:
                warnings.append(
                    StreamDataQualityWarning(
                        kind=WarningKind.UNKNOWN_TOOL_CALL,
                        tool_call_id=call.id,
                        tool_name=call.name,
                        backend=prov.name,
                        stage=stage,
                        detail="tool was not declared in this request",
                    )
                )
                continue
            parameters = prov.schema_rules.apply(schema.parameters)
            validator = jsonschema.validators.validator_for(parameters)(parameters)
            error = jsonschema.exceptions.best_match(validator.iter_errors(call.arguments))
            if error is not None:
                warnings.append(
                    StreamDataQualityWarning(
                        kind=WarningKind.SCHEMA_MISMATCH,
                        tool_call_id=call.id,
                        tool_name=call.name,
                        backend=prov.name,
                        stage=stage,
                        detail=error.message,
                    )
                )
        for warning in warnings:
            logger.warning("%s", warning)
        return warnings

    # ------------------------------------------------------------------
    # Token counting
    # ------------------------------------------------------------------

    def count_tokens(
        self,
        conversation: Conversation,
        tools: Sequence[ToolSchema] | None = None,
    ) -> int:
        """Delegate token counting to the active provider."""
        return self.active_provider.count_tokens(conversation, tools)

    async def aclose(self) -> None:
        await self.client_pool.aclose()


# ---------------------------------------------------------------------------
# Wiring from config
# ---------------------------------------------------------------------------

PROVIDER_CLASSES: dict[str, type[Provider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAICompatProvider,
    "gemini": GeminiProvider,
    "ollama": OllamaProvider,
}


def build_provider(
    section: LLMProviderConfig,
    *,
    schema_cache: SchemaCache | None = None,
    repairer: ConversationRepairer | None = None,
) -> Provider:
    """Instantiate the provider class named by ``section.backend``."""
    cls = PROVIDER_CLASSES.get(section.backend)
    if cls is None:
        raise ConfigError(
            f"unknown backend {section.backend!r} for provider {section.name!r}; "
            f"expected one of {sorted(PROVIDER_CLASSES)}",
            backend=section.backend,
        )
    api_key = os.environ.get(section.api_key_env, "") if section.api_key_env else ""
    return cls(
        section.model,
        api_key,
        section.api_base or None,
        name=section.name,
        timeout=float(section.timeout_seconds),
        max_context=section.max_context_tokens,
        max_output=section.max_output_tokens,
        schema_cache=schema_cache,
        repairer=repairer,
    )


def build_router(cfg: ModelBridgeConfig, client_pool: ClientPool | None = None) -> LLMRouter:
    """
    Wire an ``LLMRouter`` from config.

    Every provider shares one ``SchemaCache``, one ``ClientPool`` and one
    ``RetryExecutor``.  The ``llm`` section becomes the active provider.
    """
    router = LLMRouter(
        client_pool=client_pool or ClientPool(timeout=float(cfg.llm.timeout_seconds)),
        retry=RetryExecutor(
            max_attempts=cfg.retry.max_attempts,
            base_delay=cfg.retry.base_delay_seconds,
            multiplier=cfg.retry.multiplier,
            max_delay=cfg.retry.max_delay_seconds,
        ),
        schema_cache=SchemaCache(cfg.cache.schema_cache_size),
        repairer=ConversationRepairer(
            RepairPolicy(
                min_orphans=cfg.repair.min_orphans,
                min_orphan_ratio=cfg.repair.min_orphan_ratio,
                analysis_markers=tuple(cfg.repair.analysis_markers),
                fallback_request=cfg.repair.fallback_request,
            )
        ),
    )
    for section in [cfg.llm, *cfg.provider_sections()]:
        router.register_provider(
            section.name,
            build_provider(section, schema_cache=router.schema_cache, repairer=router.repairer),
        )
    router.set_active(cfg.llm.name)
    return router
