"""Core types for the LLM subsystem."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Union

from modelbridge.types import StreamDataQualityWarning


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FinishReason(str, Enum):
    STOP = "stop"
    MAX_OUTPUT_REACHED = "max_output_reached"
    CONTENT_FILTERED = "content_filtered"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Parts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Text:
    content: str


@dataclass(frozen=True)
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """The outcome of a tool call, linked to it by ``tool_call_id``."""

    tool_call_id: str
    payload: Any = None
    is_error: bool = False


Part = Union[Text, ToolCall, ToolResult]


# ---------------------------------------------------------------------------
# Turns and conversations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Turn:
    """
    One role's contribution to a conversation.

    ``parts`` is never empty.  An assistant turn with no parts is given the
    filler sentinel ``(Text(""),)`` so consumers always see at least one
    part; user and system turns must carry content.
    """

    role: Role
    parts: tuple[Part, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "role", Role(self.role))
        parts = tuple(self.parts)
        if not parts:
            if self.role is not Role.ASSISTANT:
                raise ValueError(f"{self.role.value} turn must have at least one part")
            parts = (Text(""),)
        object.__setattr__(self, "parts", parts)

    @classmethod
    def user(cls, *parts: Part | str) -> Turn:
        return cls(Role.USER, _coerce_parts(parts))

    @classmethod
    def assistant(cls, *parts: Part | str) -> Turn:
        return cls(Role.ASSISTANT, _coerce_parts(parts))

    @classmethod
    def system(cls, text: str) -> Turn:
        return cls(Role.SYSTEM, (Text(text),))

    @property
    def text(self) -> str:
        return "".join(p.content for p in self.parts if isinstance(p, Text))

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [p for p in self.parts if isinstance(p, ToolCall)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [p for p in self.parts if isinstance(p, ToolResult)]


def _coerce_parts(parts: tuple[Part | str, ...]) -> tuple[Part, ...]:
    return tuple(Text(p) if isinstance(p, str) else p for p in parts)


@dataclass(frozen=True)
class Conversation:
    """Ordered, immutable history of turns."""

    turns: tuple[Turn, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "turns", tuple(self.turns))

    def append(self, turn: Turn) -> Conversation:
        return Conversation(self.turns + (turn,))

    def __iter__(self) -> Iterator[Turn]:
        return iter(self.turns)

    def __len__(self) -> int:
        return len(self.turns)

    def __getitem__(self, index: int) -> Turn:
        return self.turns[index]


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSchema:
    """Provider-neutral description of a callable tool."""

    name: str
    description: str = ""
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})

    def normalized(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters or {},
        }

    def content_hash(self) -> str:
        canonical = json.dumps(self.normalized(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Usage and generation options
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UsageMetadata:
    """Provider-reported consumption counters.  Additive and non-negative."""

    prompt_units: int = 0
    completion_units: int = 0

    def __post_init__(self) -> None:
        if self.prompt_units < 0 or self.completion_units < 0:
            raise ValueError("usage counters must be non-negative")

    @classmethod
    def from_counts(cls, prompt: int | None, completion: int | None) -> UsageMetadata:
        return cls(max(0, int(prompt or 0)), max(0, int(completion or 0)))

    @property
    def total(self) -> int:
        return self.prompt_units + self.completion_units

    def __add__(self, other: UsageMetadata) -> UsageMetadata:
        return UsageMetadata(
            self.prompt_units + other.prompt_units,
            self.completion_units + other.completion_units,
        )


@dataclass
class GenerationOptions:
    model: str | None = None
    temperature: float | None = None
    max_output_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    stop_sequences: list[str] = field(default_factory=list)
    system_instruction: str | None = None


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallStart:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallArgumentDelta:
    id: str
    fragment: str


@dataclass(frozen=True)
class ToolCallEnd:
    id: str


@dataclass(frozen=True)
class MessageEnd:
    finish_reason: FinishReason = FinishReason.STOP
    usage: UsageMetadata = field(default_factory=UsageMetadata)


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallArgumentDelta, ToolCallEnd, MessageEnd]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StreamChunk:
    """
    A single chunk yielded while streaming a response.

    *parts* carries parts completed by this event: a ``Text`` per text delta
    or a finished ``ToolCall``.
    *warnings* carries data-quality warnings raised by this event.
    *done* is ``True`` on the final chunk, which also carries the finish
    reason, the usage counters and the assembled ``turn``.
    """

    parts: list[Part] = field(default_factory=list)
    warnings: list[StreamDataQualityWarning] = field(default_factory=list)
    done: bool = False
    finish_reason: FinishReason | None = None
    usage: UsageMetadata | None = None
    turn: Turn | None = None

    @property
    def text(self) -> str:
        return "".join(p.content for p in self.parts if isinstance(p, Text))


@dataclass
class AssembledTurn:
    """
    The complete assistant turn after one exchange.

    Produced by ``LLMRouter.complete`` and by the response translators.
    """

    turn: Turn
    finish_reason: FinishReason = FinishReason.STOP
    usage: UsageMetadata = field(default_factory=UsageMetadata)
    warnings: list[StreamDataQualityWarning] = field(default_factory=list)
    provider: str | None = None
    model: str | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def tool_calls(self) -> list[ToolCall]:
        return self.turn.tool_calls


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def part_to_dict(part: Part) -> dict:
    if isinstance(part, Text):
        return {"type": "text", "text": part.content}
    if isinstance(part, ToolCall):
        return {"type": "tool_call", "id": part.id, "name": part.name, "arguments": part.arguments}
    return {
        "type": "tool_result",
        "tool_call_id": part.tool_call_id,
        "payload": part.payload,
        "is_error": part.is_error,
    }


def part_from_dict(raw: dict | str) -> Part:
    if isinstance(raw, str):
        return Text(raw)
    kind = raw.get("type", "text")
    if kind == "text":
        return Text(raw.get("text", ""))
    if kind == "tool_call":
        return ToolCall(id=raw.get("id") or "", name=raw["name"], arguments=raw.get("arguments", {}))
    if kind == "tool_result":
        return ToolResult(
            tool_call_id=raw["tool_call_id"],
            payload=raw.get("payload"),
            is_error=bool(raw.get("is_error", False)),
        )
    raise ValueError(f"Unknown part type: {kind!r}")


def conversation_to_dict(conversation: Conversation) -> list[dict]:
    return [
        {"role": turn.role.value, "parts": [part_to_dict(p) for p in turn.parts]}
        for turn in conversation
    ]


def conversation_from_dict(raw: list[dict]) -> Conversation:
    """
    Build a Conversation from its JSON form.

    Each turn is ``{"role": ..., "parts": [...]}``; a bare ``"content"``
    string is accepted as shorthand for a single text part.
    """
    turns: list[Turn] = []
    for item in raw:
        if "parts" in item:
            parts = tuple(part_from_dict(p) for p in item["parts"])
        else:
            parts = (Text(item.get("content", "")),)
        turns.append(Turn(Role(item["role"]), parts))
    return Conversation(tuple(turns))


def tool_schema_from_dict(raw: dict) -> ToolSchema:
    """Accept both the bare form and the OpenAI ``{"function": {...}}`` form."""
    func = raw.get("function", raw)
    return ToolSchema(
        name=func["name"],
        description=func.get("description", ""),
        parameters=func.get("parameters") or func.get("input_schema") or {"type": "object"},
    )
