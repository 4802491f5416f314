"""
Long-lived HTTP clients, one per backend identity and credential set.

Clients are created on first use and reused for every later request; they
are only closed by :meth:`ClientPool.aclose` at shutdown.  Keys carry a
SHA-256 fingerprint of the credentials, never the secret itself.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Callable

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credentials:
    api_key: str = ""
    headers: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    def fingerprint(self) -> str:
        digest = hashlib.sha256(self.api_key.encode("utf-8"))
        for name, value in self.headers:
            digest.update(f"\0{name}={value}".encode("utf-8"))
        return digest.hexdigest()[:16]

    def __repr__(self) -> str:
        return f"Credentials(fingerprint={self.fingerprint()})"


PoolKey = tuple[str, str, str]
ClientFactory = Callable[[str, dict[str, str], float], httpx.AsyncClient]


def _default_factory(base_url: str, headers: dict[str, str], timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)


class ClientPool:
    """
    Parameters
    ----------
    factory:
        Callable ``(base_url, headers, timeout) -> httpx.AsyncClient``.
        Tests inject one that mounts an ``httpx.MockTransport``.
    timeout:
        Default request timeout in seconds for new clients.
    """

    def __init__(
        self,
        factory: ClientFactory | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._factory = factory or _default_factory
        self._timeout = timeout
        self._clients: dict[PoolKey, httpx.AsyncClient] = {}

    @staticmethod
    def key_for(backend: str, base_url: str, credentials: Credentials) -> PoolKey:
        return backend, base_url.rstrip("/"), credentials.fingerprint()

    def get(
        self,
        backend: str,
        base_url: str,
        credentials: Credentials,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.AsyncClient:
        """
        Return the pooled client for ``(backend, base_url, credentials)``,
        creating it on first use.
        """
        key = self.key_for(backend, base_url, credentials)
        client = self._clients.get(key)
        if client is not None and not client.is_closed:
            return client

        client = self._factory(
            base_url.rstrip("/"),
            dict(headers or {}),
            timeout if timeout is not None else self._timeout,
        )
        self._clients[key] = client
        logger.debug("Client pool created client for %s at %s", backend, key[1])
        return client

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, key: object) -> bool:
        return key in self._clients

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
