"""LLM subsystem -- providers, routing, and streaming reassembly."""

from modelbridge.llm.types import (
    AssembledTurn,
    Conversation,
    FinishReason,
    GenerationOptions,
    Role,
    StreamChunk,
    Text,
    ToolCall,
    ToolResult,
    ToolSchema,
    Turn,
    UsageMetadata,
)
from modelbridge.llm.client_pool import ClientPool
from modelbridge.llm.reassembler import StreamReassembler
from modelbridge.llm.repair import ConversationRepairer, RepairPolicy
from modelbridge.llm.retry import RetryExecutor
from modelbridge.llm.router import LLMRouter, build_router
from modelbridge.llm.schema_cache import SchemaCache
from modelbridge.llm.token_counter import TokenCounter

__all__ = [
    "AssembledTurn",
    "ClientPool",
    "Conversation",
    "ConversationRepairer",
    "FinishReason",
    "GenerationOptions",
    "LLMRouter",
    "RepairPolicy",
    "RetryExecutor",
    "Role",
    "SchemaCache",
    "StreamChunk",
    "StreamReassembler",
    "Text",
    "TokenCounter",
    "ToolCall",
    "ToolResult",
    "ToolSchema",
    "Turn",
    "UsageMetadata",
    "build_router",
]
