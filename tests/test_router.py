"""Tests for modelbridge.llm.router."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from modelbridge.config import LLMProviderConfig, ModelBridgeConfig
from modelbridge.llm.providers.anthropic import AnthropicProvider
from modelbridge.llm.retry import RetryExecutor
from modelbridge.llm.router import LLMRouter, build_provider, build_router
from modelbridge.llm.types import (
    Conversation,
    FinishReason,
    GenerationOptions,
    MessageEnd,
    Text,
    TextDelta,
    ToolCall,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolResult,
    ToolSchema,
    Turn,
)
from modelbridge.types import (
    AuthError,
    ConfigError,
    RequestCancelled,
    RequestRejectedError,
    RetryExhaustedError,
    Stage,
    TransientNetworkError,
    WarningKind,
)
from tests.mock_providers import (
    MockProvider,
    make_text_events,
    make_tool_call_events,
    mock_pool,
    sse_body,
)

LIST_DIR = ToolSchema(
    name="list_directory",
    description="List a directory",
    parameters={"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
)


async def _no_sleep(delay: float) -> None:
    return None


def _router(*providers: MockProvider, max_attempts: int = 3) -> LLMRouter:
    router = LLMRouter(retry=RetryExecutor(max_attempts=max_attempts, sleep=_no_sleep))
    for prov in providers:
        router.register_provider(prov.name, prov)
    return router


def _ask(text: str = "what is in /tmp?") -> Conversation:
    return Conversation((Turn.user(text),))


class TestProviderManagement:
    def test_first_registered_is_active(self):
        router = _router(MockProvider(name="a"), MockProvider(name="b"))
        assert router.active_name == "a"
        assert router.provider_names == ["a", "b"]

    def test_set_active(self):
        router = _router(MockProvider(name="a"), MockProvider(name="b"))
        router.set_active("b")
        assert router.active_provider.name == "b"

    def test_set_active_unknown(self):
        with pytest.raises(KeyError):
            _router(MockProvider(name="a")).set_active("nope")

    def test_no_provider(self):
        with pytest.raises(ConfigError):
            LLMRouter().active_provider

    def test_get_provider_unknown(self):
        with pytest.raises(ConfigError):
            _router(MockProvider(name="a")).get_provider("nope")


class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_chunks_then_done(self):
        prov = MockProvider(events=make_text_events("Hello brave new world"))
        router = _router(prov)
        chunks = [c async for c in router.stream(_ask())]
        assert "".join(c.text for c in chunks) == "Hello brave new world"
        assert chunks[-1].done
        assert chunks[-1].turn.text == "Hello brave new world"
        assert all(not c.done for c in chunks[:-1])
        assert prov.responses[0].closed

    @pytest.mark.asyncio
    async def test_complete_tool_call(self):
        prov = MockProvider(events=make_tool_call_events("list_directory", {"path": "/tmp"}, call_id="t1"))
        result = await _router(prov).complete(_ask(), [LIST_DIR])
        assert result.tool_calls == [ToolCall("t1", "list_directory", {"path": "/tmp"})]
        assert result.finish_reason is FinishReason.STOP
        assert result.usage.total == 17
        assert result.warnings == []
        assert result.provider == "mock"
        assert result.metadata["provider"] == "mock"

    @pytest.mark.asyncio
    async def test_named_provider_is_used(self):
        a = MockProvider(events=make_text_events("from a"), name="a")
        b = MockProvider(events=make_text_events("from b"), name="b")
        result = await _router(a, b).complete(_ask(), provider="b")
        assert result.turn.text == "from b"
        assert a.open_calls == 0

    @pytest.mark.asyncio
    async def test_stream_without_message_end(self):
        prov = MockProvider(events=[TextDelta("partial")])
        result = await _router(prov).complete(_ask())
        assert result.finish_reason is FinishReason.OTHER
        assert result.turn.text == "partial"


class TestRetry:
    @pytest.mark.asyncio
    async def test_open_retried_until_success(self):
        prov = MockProvider(
            events=make_text_events("ok"),
            open_failures=[TransientNetworkError("503", status_code=503)] * 2,
        )
        result = await _router(prov).complete(_ask())
        assert result.turn.text == "ok"
        assert prov.open_calls == 3

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        prov = MockProvider(open_failures=[TransientNetworkError("503", status_code=503)] * 5)
        with pytest.raises(RetryExhaustedError) as exc_info:
            await _router(prov, max_attempts=2).complete(_ask())
        assert prov.open_calls == 2
        assert exc_info.value.attempts == 2
        assert exc_info.value.backend == "mock"

    @pytest.mark.asyncio
    async def test_auth_error_not_retried(self):
        prov = MockProvider(open_failures=[AuthError("bad key")])
        with pytest.raises(AuthError):
            await _router(prov).complete(_ask())
        assert prov.open_calls == 1

    @pytest.mark.asyncio
    async def test_mid_stream_failure_not_retried(self):
        prov = MockProvider(
            events=[TextDelta("hal"), TransientNetworkError("reset", stage=Stage.STREAM)]
        )
        with pytest.raises(TransientNetworkError):
            await _router(prov).complete(_ask())
        assert prov.open_calls == 1
        assert prov.responses[0].closed

    @pytest.mark.asyncio
    async def test_non_stream_send_retried(self):
        prov = MockProvider(
            response={"text": "plain"},
            open_failures=[TransientNetworkError("429", status_code=429)],
        )
        result = await _router(prov).complete(_ask(), stream=False)
        assert result.turn.text == "plain"
        assert prov.send_calls == 2
        assert prov.open_calls == 0


class TestWarnings:
    @pytest.mark.asyncio
    async def test_schema_mismatch(self):
        prov = MockProvider(events=make_tool_call_events("list_directory", {"path": 42}, call_id="t1"))
        result = await _router(prov).complete(_ask(), [LIST_DIR])
        assert result.tool_calls[0].arguments == {"path": 42}
        kinds = [w.kind for w in result.warnings]
        assert kinds == [WarningKind.SCHEMA_MISMATCH]
        assert result.warnings[0].tool_call_id == "t1"
        assert result.warnings[0].stage is Stage.STREAM

    @pytest.mark.asyncio
    async def test_missing_required_argument(self):
        prov = MockProvider(events=make_tool_call_events("list_directory", {}, call_id="t1"))
        result = await _router(prov).complete(_ask(), [LIST_DIR])
        assert WarningKind.SCHEMA_MISMATCH in [w.kind for w in result.warnings]

    @pytest.mark.asyncio
    async def test_undeclared_tool(self):
        prov = MockProvider(events=make_tool_call_events("delete_everything", {"path": "/"}))
        result = await _router(prov).complete(_ask(), [LIST_DIR])
        assert [w.kind for w in result.warnings] == [WarningKind.UNKNOWN_TOOL_CALL]

    @pytest.mark.asyncio
    async def test_no_tools_no_checks(self):
        prov = MockProvider(events=make_tool_call_events("anything", {"x": 1}))
        result = await _router(prov).complete(_ask())
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_malformed_arguments_do_not_abort(self):
        prov = MockProvider(
            events=[
                ToolCallStart("t1", "list_directory"),
                ToolCallArgumentDelta("t1", "{not json"),
                ToolCallEnd("t1"),
                MessageEnd(),
            ]
        )
        result = await _router(prov).complete(_ask(), [LIST_DIR])
        assert result.tool_calls[0].arguments == {}
        assert WarningKind.UNPARSABLE_ARGUMENTS in [w.kind for w in result.warnings]


class TestHistoryHandling:
    @pytest.mark.asyncio
    async def test_dropped_result_ids_reported(self):
        conv = Conversation(
            (
                Turn.user("go"),
                Turn.assistant(ToolCall("t1", "list_directory", {"path": "/"})),
                Turn.user(ToolResult("t1", "ok"), ToolResult("orphan-9", "stale")),
            )
        )
        prov = MockProvider(events=make_text_events("done"))
        result = await _router(prov).complete(conv)
        assert result.metadata["dropped_tool_result_ids"] == ["orphan-9"]
        assert prov.last_request.body["messages"][-1]["results"] == ["t1"]

    @pytest.mark.asyncio
    async def test_discarded_history_reported(self):
        conv = Conversation(
            (
                Turn.user("list /srv"),
                Turn.user(ToolResult("a", ""), ToolResult("b", ""), ToolResult("c", "")),
            )
        )
        prov = MockProvider(events=make_text_events("done"))
        result = await _router(prov).complete(conv)
        assert result.metadata["discarded_history"] is True
        assert [m["text"] for m in prov.last_request.body["messages"]] == ["list /srv"]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_mid_stream(self):
        cancel = asyncio.Event()

        class SlowProvider(MockProvider):
            async def iter_events(self, response):
                yield TextDelta("first")
                cancel.set()
                await asyncio.sleep(60)
                yield MessageEnd()

        prov = SlowProvider()
        router = _router(prov)
        seen = []
        with pytest.raises(RequestCancelled) as exc_info:
            async for chunk in router.stream(_ask(), cancel=cancel):
                seen.append(chunk)
        assert [c.text for c in seen] == ["first"]
        assert exc_info.value.backend == "mock"
        assert prov.responses[0].closed

    @pytest.mark.asyncio
    async def test_cancel_before_open(self):
        cancel = asyncio.Event()
        cancel.set()
        prov = MockProvider(events=make_text_events("never"))
        with pytest.raises(RequestCancelled):
            await _router(prov).complete(_ask(), cancel=cancel)
        assert prov.open_calls == 0


# ---------------------------------------------------------------------------
# Over HTTP with a mock transport
# ---------------------------------------------------------------------------


def _anthropic_stream() -> bytes:
    return sse_body(
        [
            {"type": "message_start", "message": {"usage": {"input_tokens": 9, "output_tokens": 1}}},
            {
                "type": "content_block_start",
                "index": 0,
                "content_block": {"type": "tool_use", "id": "toolu_7", "name": "list_directory", "input": {}},
            },
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": '{"path":'}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "input_json_delta", "partial_json": ' "/tmp"}'}},
            {"type": "content_block_stop", "index": 0},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 4}},
            {"type": "message_stop"},
        ],
        named=True,
    )


class TestOverHTTP:
    @pytest.mark.asyncio
    async def test_anthropic_exchange(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, content=_anthropic_stream(), headers={"content-type": "text/event-stream"}
            )

        router = LLMRouter(client_pool=mock_pool(handler), retry=RetryExecutor(sleep=_no_sleep))
        router.register_provider("claude", AnthropicProvider("claude-test", "sk-test", name="claude"))
        result = await router.complete(_ask(), [LIST_DIR])
        await router.aclose()

        assert result.tool_calls == [ToolCall("toolu_7", "list_directory", {"path": "/tmp"})]
        assert (result.usage.prompt_units, result.usage.completion_units) == (9, 4)
        request = seen[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-test"
        assert json.loads(request.content)["stream"] is True

    @pytest.mark.asyncio
    async def test_overloaded_then_success(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            if calls["n"] == 1:
                return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error"}})
            return httpx.Response(200, content=_anthropic_stream())

        router = LLMRouter(client_pool=mock_pool(handler), retry=RetryExecutor(sleep=_no_sleep))
        router.register_provider("claude", AnthropicProvider("claude-test", "sk-test"))
        result = await router.complete(_ask(), [LIST_DIR])
        await router.aclose()
        assert calls["n"] == 2
        assert result.tool_calls[0].id == "toolu_7"

    @pytest.mark.asyncio
    async def test_rejected_request_not_retried(self):
        calls = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            calls["n"] += 1
            return httpx.Response(400, json={"error": {"message": "bad tool schema"}})

        router = LLMRouter(client_pool=mock_pool(handler), retry=RetryExecutor(sleep=_no_sleep))
        router.register_provider("claude", AnthropicProvider("claude-test", "sk-test"))
        with pytest.raises(RequestRejectedError) as exc_info:
            await router.complete(_ask())
        await router.aclose()
        assert calls["n"] == 1
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_openai_non_stream(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "choices": [
                        {"message": {"role": "assistant", "content": "hi there"}, "finish_reason": "length"}
                    ],
                    "usage": {"prompt_tokens": 3, "completion_tokens": 2},
                },
            )

        cfg = ModelBridgeConfig(llm=LLMProviderConfig(name="local", backend="openai", api_key_env=""))
        router = build_router(cfg, client_pool=mock_pool(handler))
        result = await router.complete(_ask(), options=GenerationOptions(max_output_tokens=5), stream=False)
        await router.aclose()
        assert result.turn.parts == (Text("hi there"),)
        assert result.finish_reason is FinishReason.MAX_OUTPUT_REACHED
        assert result.provider == "local"


# ---------------------------------------------------------------------------
# Wiring from config
# ---------------------------------------------------------------------------


class TestBuildRouter:
    def test_registers_all_sections(self, monkeypatch):
        monkeypatch.setenv("TEST_ANTHROPIC_KEY", "sk-a")
        cfg = ModelBridgeConfig(
            llm=LLMProviderConfig(name="main", backend="openai", model="gpt-4o", api_key_env=""),
            providers={
                "claude": LLMProviderConfig(
                    name="claude", backend="anthropic", model="claude-test", api_key_env="TEST_ANTHROPIC_KEY"
                ),
                "local": LLMProviderConfig(name="local", backend="ollama", model="llama3", api_key_env=""),
            },
        )
        router = build_router(cfg)
        assert router.active_name == "main"
        assert set(router.provider_names) == {"main", "claude", "local"}
        claude = router.get_provider("claude")
        assert isinstance(claude, AnthropicProvider)
        assert claude.headers()["x-api-key"] == "sk-a"
        # One cache shared by every provider.
        assert claude._schema_cache is router.get_provider("local")._schema_cache

    def test_retry_settings_applied(self):
        cfg = ModelBridgeConfig(llm=LLMProviderConfig(api_key_env=""))
        cfg.retry.max_attempts = 7
        assert build_router(cfg).retry.max_attempts == 7

    def test_unknown_backend(self):
        with pytest.raises(ConfigError):
            build_provider(LLMProviderConfig(name="x", backend="bedrock"))
