"""Tests for modelbridge.llm.client_pool.ClientPool."""

from __future__ import annotations

import logging

import httpx
import pytest

from modelbridge.llm.client_pool import ClientPool, Credentials


def _factory(created: list):
    def factory(base_url, headers, timeout):
        client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})),
        )
        created.append(client)
        return client

    return factory


class TestCredentials:
    def test_fingerprint_hides_secret(self):
        creds = Credentials(api_key="sk-very-secret")
        assert "sk-very-secret" not in creds.fingerprint()
        assert "sk-very-secret" not in repr(creds)
        assert len(creds.fingerprint()) == 16

    def test_fingerprint_distinguishes_keys_and_headers(self):
        a = Credentials("k1")
        b = Credentials("k2")
        c = Credentials("k1", headers=(("x-org", "acme"),))
        assert len({a.fingerprint(), b.fingerprint(), c.fingerprint()}) == 3
        assert Credentials("k1").fingerprint() == a.fingerprint()


class TestClientPool:
    @pytest.mark.asyncio
    async def test_reuses_client_for_same_identity(self):
        created: list = []
        pool = ClientPool(factory=_factory(created))
        first = pool.get("openai", "https://api.openai.com/v1", Credentials("k"))
        second = pool.get("openai", "https://api.openai.com/v1/", Credentials("k"))
        assert first is second
        assert len(created) == 1
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_distinct_clients_per_key_and_url(self):
        created: list = []
        pool = ClientPool(factory=_factory(created))
        pool.get("openai", "https://a.example/v1", Credentials("k1"))
        pool.get("openai", "https://a.example/v1", Credentials("k2"))
        pool.get("openai", "https://b.example/v1", Credentials("k1"))
        pool.get("anthropic", "https://a.example/v1", Credentials("k1"))
        assert len(pool) == 4
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_key_never_contains_secret(self):
        pool = ClientPool(factory=_factory([]))
        creds = Credentials("sk-secret-value")
        pool.get("anthropic", "https://api.anthropic.com", creds)
        key = ClientPool.key_for("anthropic", "https://api.anthropic.com", creds)
        assert key in pool
        assert all("sk-secret-value" not in part for part in key)
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_headers_and_timeout_passed_to_factory(self):
        seen = {}

        def factory(base_url, headers, timeout):
            seen.update(base_url=base_url, headers=headers, timeout=timeout)
            return httpx.AsyncClient(base_url=base_url)

        pool = ClientPool(factory=factory, timeout=7.0)
        pool.get("gemini", "https://g.example/", Credentials("k"), headers={"x-goog-api-key": "k"})
        assert seen == {
            "base_url": "https://g.example",
            "headers": {"x-goog-api-key": "k"},
            "timeout": 7.0,
        }
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_aclose_closes_everything(self):
        created: list = []
        pool = ClientPool(factory=_factory(created))
        pool.get("openai", "https://a.example", Credentials("k1"))
        pool.get("ollama", "http://localhost:11434", Credentials())
        await pool.aclose()
        assert len(pool) == 0
        assert all(c.is_closed for c in created)

    @pytest.mark.asyncio
    async def test_closed_client_is_replaced(self):
        created: list = []
        pool = ClientPool(factory=_factory(created))
        first = pool.get("openai", "https://a.example", Credentials("k"))
        await first.aclose()
        second = pool.get("openai", "https://a.example", Credentials("k"))
        assert second is not first
        assert len(pool) == 1
        await pool.aclose()

    @pytest.mark.asyncio
    async def test_secret_not_logged(self, caplog):
        pool = ClientPool(factory=_factory([]))
        with caplog.at_level(logging.DEBUG, logger="modelbridge.llm.client_pool"):
            pool.get("openai", "https://a.example", Credentials("sk-top-secret"))
        assert "sk-top-secret" not in caplog.text
        await pool.aclose()
