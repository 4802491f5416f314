"""
Error taxonomy shared by every stage of the adapter.

Every failure names the backend it came from and the stage that produced it,
so a caller can tell a bad conversation (``translate``) from a flaky network
(``request``/``retry``) or a misbehaving model (``stream``/``response``).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Stage(str, Enum):
    TRANSLATE = "translate"
    REQUEST = "request"
    STREAM = "stream"
    RESPONSE = "response"
    RETRY = "retry"


class ErrorCode:
    TRANSLATION_ERROR = "translation_error"
    UPSTREAM_PROTOCOL_ERROR = "upstream_protocol_error"
    REQUEST_REJECTED = "request_rejected"
    TRANSIENT_NETWORK_ERROR = "transient_network_error"
    AUTH_ERROR = "auth_error"
    CONFIG_ERROR = "config_error"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"


class ModelBridgeError(Exception):
    """Base class for all adapter failures."""

    code = "error"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        stage: Stage | str | None = None,
        attempts: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backend = backend
        self.stage = Stage(stage) if stage is not None else None
        self.attempts = attempts

    def __str__(self) -> str:
        where = f"{self.backend or '?'}/{self.stage.value if self.stage else '?'}"
        text = f"[{where}] {self.message}"
        if self.attempts is not None:
            text += f" (after {self.attempts} attempt{'s' if self.attempts != 1 else ''})"
        return text


class TranslationError(ModelBridgeError):
    """The internal conversation cannot be expressed on the wire."""

    code = ErrorCode.TRANSLATION_ERROR


class UpstreamProtocolError(ModelBridgeError):
    """The backend answered with a shape we cannot read."""

    code = ErrorCode.UPSTREAM_PROTOCOL_ERROR


class RequestRejectedError(UpstreamProtocolError):
    """The backend refused the request (4xx other than auth/throttling)."""

    code = ErrorCode.REQUEST_REJECTED

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class TransientNetworkError(ModelBridgeError):
    """Timeouts, throttling and 5xx-equivalents.  Safe to retry."""

    code = ErrorCode.TRANSIENT_NETWORK_ERROR
    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class AuthError(ModelBridgeError):
    code = ErrorCode.AUTH_ERROR


class ConfigError(ModelBridgeError):
    code = ErrorCode.CONFIG_ERROR


class RetryExhaustedError(ModelBridgeError):
    """Transient failures persisted past the attempt cap."""

    code = ErrorCode.RETRY_EXHAUSTED


class RequestCancelled(ModelBridgeError):
    """The caller aborted the exchange.  Not a failure and never retried."""

    code = ErrorCode.CANCELLED


class WarningKind:
    UNPARSABLE_ARGUMENTS = "unparsable_arguments"
    EMPTY_ARGUMENTS = "empty_arguments"
    TRUNCATED = "truncated"
    SCHEMA_MISMATCH = "schema_mismatch"
    UNKNOWN_TOOL_CALL = "unknown_tool_call"
    DUPLICATE_START = "duplicate_start"


@dataclass(frozen=True)
class StreamDataQualityWarning:
    """
    A non-fatal defect in upstream output.

    Typically a tool call whose streamed arguments could not be parsed and
    were degraded to ``{}``.  Callers may choose to re-prompt instead of
    executing the tool with empty arguments.
    """

    kind: str
    tool_call_id: str | None = None
    tool_name: str | None = None
    backend: str | None = None
    stage: Stage = Stage.STREAM
    detail: str = ""

    def __str__(self) -> str:
        return (
            f"[{self.backend or '?'}/{self.stage.value}] {self.kind} "
            f"tool_call_id={self.tool_call_id} name={self.tool_name}"
            + (f": {self.detail}" if self.detail else "")
        )
