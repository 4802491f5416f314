"""
Memoized translation of tool schema sets into provider documents.

Keys are ``(backend, digest)`` where the digest combines the content hashes
of the schemas in order, so two structurally identical schema sets share an
entry regardless of object identity.  The cache is bounded; the least
recently used entry is evicted first.

The cache holds no locks.  Two concurrent first translations of the same set
both compute and store the same value; the second store simply overwrites
the first.
"""

from __future__ import annotations

import copy
import hashlib
import logging
from collections import OrderedDict
from typing import Callable, Sequence

from modelbridge.llm.types import ToolSchema

logger = logging.getLogger(__name__)

Translate = Callable[[Sequence[ToolSchema]], list[dict]]


class SchemaCache:
    """
    Bounded map from a normalized ``ToolSchema`` set to its translation.

    Parameters
    ----------
    max_entries:
        Upper bound on cached translations.  Must be positive.
    """

    def __init__(self, max_entries: int = 256) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], list[dict]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @staticmethod
    def key_for(backend: str, schemas: Sequence[ToolSchema]) -> tuple[str, str]:
        digest = hashlib.sha256()
        for schema in schemas:
            digest.update(schema.content_hash().encode("ascii"))
            digest.update(b"\0")
        return backend, digest.hexdigest()

    def get_or_translate(
        self,
        backend: str,
        schemas: Sequence[ToolSchema],
        translate: Translate,
    ) -> list[dict]:
        """
        Return the cached translation of *schemas* for *backend*, computing
        it with *translate* on a miss.

        The returned list is a copy; callers may mutate it freely.
        """
        key = self.key_for(backend, schemas)
        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            self._entries.move_to_end(key)
            return copy.deepcopy(cached)

        self.misses += 1
        translated = translate(schemas)
        self._store(key, translated)
        return copy.deepcopy(translated)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store(self, key: tuple[str, str], value: list[dict]) -> None:
        self._entries[key] = copy.deepcopy(value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Schema cache evicted backend=%s digest=%s", evicted[0], evicted[1][:12])
