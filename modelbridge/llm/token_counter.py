"""
Token estimation for conversations and tool schemas.

The counter delegates to ``tiktoken``'s BPE encoder for the requested model
(``cl100k_base`` for models tiktoken does not know).  Encoders are loaded
lazily; if one cannot be loaded (for example when its BPE file cannot be
fetched offline) a simple character-based heuristic is used instead
(~4 characters per token).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Sequence

import tiktoken

from modelbridge.llm.types import Text, ToolCall, ToolResult

logger = logging.getLogger(__name__)

_UNSET = object()


class TokenCounter:
    """
    Estimate token counts for text and conversations.

    Parameters
    ----------
    model:
        Model name passed to ``tiktoken.encoding_for_model``.
    use_tiktoken:
        ``False`` forces the heuristic (used in tests and offline).
    """

    def __init__(self, model: str | None = None, use_tiktoken: bool = True) -> None:
        self.model = model
        self._enc: Any = _UNSET if use_tiktoken else None

    def _encoder(self) -> Any:
        if self._enc is _UNSET:
            try:
                self._enc = self._load_encoding()
            except Exception as exc:
                logger.debug("tiktoken encoder unavailable (%s); using heuristic", exc)
                self._enc = None
        return self._enc

    def _load_encoding(self) -> Any:
        try:
            return tiktoken.encoding_for_model(self.model or "gpt-4")
        except KeyError:
            return tiktoken.get_encoding("cl100k_base")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def count_text(self, text: str) -> int:
        """Return the estimated token count for a plain string."""
        if not text:
            return 0
        enc = self._encoder()
        if enc is not None:
            return len(enc.encode(text))
        return max(1, len(text) // 4)

    def count_conversation(self, conversation, tools: Sequence[Any] | None = None) -> int:
        """
        Estimate the total token count for a conversation.

        Each turn adds a small constant overhead (role markers, separators)
        plus the tokens of every part.  Tool schemas are counted as their
        JSON representation since the model "sees" them in the prompt.
        """
        total = 0
        for turn in conversation:
            total += 4
            for part in turn.parts:
                if isinstance(part, Text):
                    total += self.count_text(part.content)
                elif isinstance(part, ToolCall):
                    total += self.count_text(part.name)
                    total += self.count_text(json.dumps(part.arguments))
                    total += self.count_text(part.id)
                elif isinstance(part, ToolResult):
                    total += self.count_text(part.tool_call_id)
                    payload = part.payload if isinstance(part.payload, str) else json.dumps(part.payload)
                    total += self.count_text(payload)

        if tools:
            total += self.count_text(
                json.dumps([t.normalized() if hasattr(t, "normalized") else t for t in tools])
            )
        return total
