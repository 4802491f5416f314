"""
Reassembles provider-neutral stream events into a complete assistant turn.

Design goals:
  - Emit ``Text`` parts as soon as their delta arrives so the UI can render
    incrementally.
  - Accumulate ``ToolCallArgumentDelta`` fragments per tool-call id.  Several
    ids may be open at once; nothing assumes one tool at a time.
  - On ``ToolCallEnd`` parse the concatenated fragments.  Unparsable or empty
    arguments degrade to ``{}`` with a ``StreamDataQualityWarning`` instead of
    aborting the stream.
  - On ``MessageEnd`` force-close anything still open (flagged truncated),
    record usage and the finish reason, and build the final ``Turn``.

Per-id state machine::

    Idle --ToolCallStart--> Accumulating --ToolCallEnd--> Closed
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from modelbridge.llm.retry import next_or_cancel
from modelbridge.llm.types import (
    AssembledTurn,
    FinishReason,
    MessageEnd,
    Part,
    Role,
    StreamChunk,
    StreamEvent,
    Text,
    TextDelta,
    ToolCall,
    ToolCallArgumentDelta,
    ToolCallEnd,
    ToolCallStart,
    Turn,
    UsageMetadata,
)
from modelbridge.types import (
    RequestCancelled,
    Stage,
    StreamDataQualityWarning,
    UpstreamProtocolError,
    WarningKind,
)

logger = logging.getLogger(__name__)


@dataclass
class _Buffer:
    name: str
    fragments: list[str] = field(default_factory=list)


class StreamReassembler:
    """Feeds on ``StreamEvent`` objects and emits finished parts."""

    def __init__(self, backend: str | None = None) -> None:
        self.backend = backend
        self._open: dict[str, _Buffer] = {}
        self._closed: set[str] = set()
        self._parts: list[Part] = []
        self.warnings: list[StreamDataQualityWarning] = []
        self.finish_reason: FinishReason | None = None
        self.usage = UsageMetadata()
        self.finished = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def open_ids(self) -> list[str]:
        return list(self._open)

    def feed(self, event: StreamEvent) -> StreamChunk:
        """
        Feed a single event.

        Returns a ``StreamChunk`` holding whatever this event completed.  The
        chunk produced by ``MessageEnd`` has ``done=True`` and the full turn.
        """
        if self.finished:
            raise UpstreamProtocolError(
                f"{type(event).__name__} received after MessageEnd",
                backend=self.backend,
                stage=Stage.STREAM,
            )

        if isinstance(event, TextDelta):
            return self._on_text(event)
        if isinstance(event, ToolCallStart):
            return self._on_start(event)
        if isinstance(event, ToolCallArgumentDelta):
            return self._on_fragment(event)
        if isinstance(event, ToolCallEnd):
            return self._on_end(event)
        if isinstance(event, MessageEnd):
            return self._on_message_end(event)
        raise UpstreamProtocolError(
            f"Unknown stream event {event!r}", backend=self.backend, stage=Stage.STREAM
        )

    def finish(self) -> StreamChunk:
        """Close a stream whose source ended without ``MessageEnd``."""
        return self._on_message_end(MessageEnd(FinishReason.OTHER, self.usage))

    def turn(self) -> Turn:
        """Build the assistant turn from everything emitted so far."""
        merged: list[Part] = []
        for part in self._parts:
            if isinstance(part, Text) and merged and isinstance(merged[-1], Text):
                merged[-1] = Text(merged[-1].content + part.content)
            else:
                merged.append(part)
        return Turn(Role.ASSISTANT, tuple(merged))

    def result(self, provider: str | None = None, model: str | None = None) -> AssembledTurn:
        return AssembledTurn(
            turn=self.turn(),
            finish_reason=self.finish_reason or FinishReason.OTHER,
            usage=self.usage,
            warnings=list(self.warnings),
            provider=provider or self.backend,
            model=model,
        )

    async def reassemble(
        self,
        events: AsyncIterator[StreamEvent],
        cancel: Any = None,
    ) -> AssembledTurn:
        """
        Drive *events* to completion and return the assembled turn.

        If *cancel* (an ``asyncio.Event``) is set while waiting for the next
        event, the partial turn is discarded and ``RequestCancelled`` raised.
        """
        iterator = events.__aiter__()
        while not self.finished:
            try:
                event = await next_or_cancel(iterator, cancel)
            except StopAsyncIteration:
                self.finish()
                break
            except RequestCancelled as exc:
                self._discard()
                exc.backend = exc.backend or self.backend
                raise
            self.feed(event)
        return self.result()

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _on_text(self, event: TextDelta) -> StreamChunk:
        if not event.text:
            return StreamChunk()
        part = Text(event.text)
        self._parts.append(part)
        return StreamChunk(parts=[part])

    def _on_start(self, event: ToolCallStart) -> StreamChunk:
        if event.id in self._open or event.id in self._closed:
            warning = self._warn(WarningKind.DUPLICATE_START, event.id, event.name)
            return StreamChunk(warnings=[warning])
        self._open[event.id] = _Buffer(name=event.name)
        return StreamChunk()

    def _on_fragment(self, event: ToolCallArgumentDelta) -> StreamChunk:
        buf = self._open.get(event.id)
        if buf is None:
            warning = self._warn(
                WarningKind.UNKNOWN_TOOL_CALL, event.id, None, "argument fragment dropped"
            )
            return StreamChunk(warnings=[warning])
        if event.fragment:
            buf.fragments.append(event.fragment)
        return StreamChunk()

    def _on_end(self, event: ToolCallEnd) -> StreamChunk:
        if event.id not in self._open:
            warning = self._warn(WarningKind.UNKNOWN_TOOL_CALL, event.id, None, "end ignored")
            return StreamChunk(warnings=[warning])
        call, warnings = self._close(event.id, truncated=False)
        return StreamChunk(parts=[call], warnings=warnings)

    def _on_message_end(self, event: MessageEnd) -> StreamChunk:
        parts: list[Part] = []
        warnings: list[StreamDataQualityWarning] = []
        for call_id in list(self._open):
            call, call_warnings = self._close(call_id, truncated=True)
            parts.append(call)
            warnings.extend(call_warnings)

        self.finish_reason = event.finish_reason
        self.usage = event.usage
        self.finished = True
        return StreamChunk(
            parts=parts,
            warnings=warnings,
            done=True,
            finish_reason=self.finish_reason,
            usage=self.usage,
            turn=self.turn(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _close(
        self, call_id: str, *, truncated: bool
    ) -> tuple[ToolCall, list[StreamDataQualityWarning]]:
        buf = self._open.pop(call_id)
        self._closed.add(call_id)
        warnings: list[StreamDataQualityWarning] = []

        raw = "".join(buf.fragments)
        if truncated:
            warnings.append(
                self._warn(WarningKind.TRUNCATED, call_id, buf.name, f"{len(raw)} chars buffered")
            )

        arguments: Any
        if not raw.strip():
            arguments = {}
            warnings.append(self._warn(WarningKind.EMPTY_ARGUMENTS, call_id, buf.name))
        else:
            try:
                arguments = json.loads(raw)
            except (json.JSONDecodeError, ValueError) as exc:
                arguments = {}
                warnings.append(
                    self._warn(
                        WarningKind.UNPARSABLE_ARGUMENTS,
                        call_id,
                        buf.name,
                        f"{exc}; raw={raw[:200]!r}",
                    )
                )

        call = ToolCall(id=call_id, name=buf.name.strip(), arguments=arguments)
        self._parts.append(call)
        return call, warnings

    def _warn(
        self,
        kind: str,
        call_id: str | None,
        name: str | None,
        detail: str = "",
    ) -> StreamDataQualityWarning:
        warning = StreamDataQualityWarning(
            kind=kind,
            tool_call_id=call_id,
            tool_name=name,
            backend=self.backend,
            stage=Stage.STREAM,
            detail=detail,
        )
        self.warnings.append(warning)
        logger.warning("Stream data-quality warning: %s", warning)
        return warning

    def _discard(self) -> None:
        self._open.clear()
        self._parts.clear()
        self.finished = True
