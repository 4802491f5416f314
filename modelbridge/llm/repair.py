"""
Detects and repairs conversation history with orphaned tool results.

An *orphaned* ``ToolResult`` references a ``tool_call_id`` that no assistant
turn ever issued.  Backends reject such histories outright, and resending
them every turn compounds the damage.  The repairer answers with one of
three graduated outcomes:

  - no orphans: the conversation is returned unchanged;
  - a few orphans: turns are left intact and the request translator drops
    only the orphaned parts;
  - mostly orphans: the history is considered corrupted and is cut down to
    the system turns plus the latest genuine user request, or a
    configured fallback request when none is left.

The thresholds are tuning knobs carried in :class:`RepairPolicy`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from modelbridge.llm.types import Conversation, Role, Text, Turn

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_MARKERS = ("Analyze *only*", "preceding response")
DEFAULT_FALLBACK_REQUEST = "Continue with the current task."


@dataclass(frozen=True)
class RepairPolicy:
    """
    Parameters
    ----------
    min_orphans:
        Minimum number of orphaned result ids before history is discarded.
    min_orphan_ratio:
        Minimum ``orphans / results`` ratio before history is discarded.
    analysis_markers:
        Substrings identifying internally generated analysis prompts, which
        never count as the user's latest request.
    fallback_request:
        User text sent after a discard when no genuine request survives.
    """

    min_orphans: int = 3
    min_orphan_ratio: float = 0.8
    analysis_markers: tuple[str, ...] = DEFAULT_ANALYSIS_MARKERS
    fallback_request: str = DEFAULT_FALLBACK_REQUEST


@dataclass(frozen=True)
class RepairResult:
    conversation: Conversation
    discard_history: bool = False
    orphan_ids: tuple[str, ...] = ()
    orphan_ratio: float = 0.0
    issued_ids: frozenset[str] = field(default_factory=frozenset)


class ConversationRepairer:
    """Stateless apart from its policy; safe to share between conversations."""

    def __init__(self, policy: RepairPolicy | None = None) -> None:
        self.policy = policy or RepairPolicy()

    def repair(self, conversation: Conversation) -> RepairResult:
        issued: set[str] = set()
        results: list[str] = []
        for turn in conversation:
            if turn.role is Role.ASSISTANT:
                issued.update(c.id for c in turn.tool_calls)
            elif turn.role is Role.USER:
                results.extend(r.tool_call_id for r in turn.tool_results)

        result_ids = set(results)
        orphans = tuple(sorted(result_ids - issued))
        if not orphans:
            return RepairResult(conversation, issued_ids=frozenset(issued))

        ratio = len(orphans) / len(result_ids)
        if len(orphans) >= self.policy.min_orphans and ratio >= self.policy.min_orphan_ratio:
            truncated = self._truncate(conversation)
            logger.warning(
                "Discarding history: %d of %d tool results orphaned (%.0f%%), "
                "keeping %d of %d turns",
                len(orphans),
                len(result_ids),
                ratio * 100,
                len(truncated),
                len(conversation),
            )
            return RepairResult(
                truncated,
                discard_history=True,
                orphan_ids=orphans,
                orphan_ratio=ratio,
                issued_ids=frozenset(issued),
            )

        logger.warning(
            "Dropping %d orphaned tool result(s) out of %d: %s",
            len(orphans),
            len(result_ids),
            ", ".join(orphans),
        )
        return RepairResult(
            conversation,
            orphan_ids=orphans,
            orphan_ratio=ratio,
            issued_ids=frozenset(issued),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def latest_user_request(self, conversation: Conversation) -> str | None:
        """Return the most recent user text that is not an analysis prompt."""
        for turn in reversed(conversation.turns):
            if turn.role is not Role.USER:
                continue
            texts = [
                p.content
                for p in turn.parts
                if isinstance(p, Text) and p.content.strip() and not self._is_analysis(p.content)
            ]
            if texts:
                return " ".join(texts)
        return None

    def _is_analysis(self, text: str) -> bool:
        return any(marker in text for marker in self.policy.analysis_markers)

    def _truncate(self, conversation: Conversation) -> Conversation:
        kept = [t for t in conversation if t.role is Role.SYSTEM]
        request = self.latest_user_request(conversation)
        if request is None:
            logger.info("No genuine user request left; using fallback request")
            request = self.policy.fallback_request
        kept.append(Turn.user(request))
        return Conversation(tuple(kept))
