from __future__ import annotations

import asyncio
import re
from typing import Any

import anthropic
import openai


class NamedError(Exception):
    """Base for every error that can be attached to a message or surfaced to a caller.

    Serializes as ``{"name": ..., "data": {...}}`` so it can be persisted on an
    assistant message and compared after a round trip through storage.
    """

    error_name = "UnknownError"

    def __init__(self, message: str = "", **data: Any):
        super().__init__(message)
        self.message = message
        self._data = ({"message": message} if message else {}) | data

    @property
    def name(self) -> str:
        return self.error_name

    @property
    def data(self) -> dict[str, Any]:
        return dict(self._data)

    def to_object(self) -> dict[str, Any]:
        return {"name": self.error_name, "data": self.data}

    @classmethod
    def is_instance(cls, value: object) -> bool:
        if isinstance(value, cls):
            return True
        return isinstance(value, dict) and value.get("name") == cls.error_name


class UnknownError(NamedError):
    error_name = "UnknownError"


# Gateway and account errors. These are raised by pre-turn gates before any
# provider call is made.


class AuthError(NamedError):
    error_name = "AuthError"


class CreditsError(NamedError):
    error_name = "CreditsError"


class MonthlyLimitError(NamedError):
    error_name = "MonthlyLimitError"


class UserLimitError(NamedError):
    error_name = "UserLimitError"


class ModelError(NamedError):
    error_name = "ModelError"


class LimitError(NamedError):
    error_name = "LimitError"

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class FreeUsageLimitError(LimitError):
    error_name = "FreeUsageLimitError"


class SubscriptionUsageLimitError(LimitError):
    error_name = "SubscriptionUsageLimitError"


# Turn errors. These end up on AssistantMessage.error.


class ProviderAuthError(NamedError):
    error_name = "ProviderAuthError"

    def __init__(self, provider_id: str, message: str):
        super().__init__(message, provider_id=provider_id)
        self.provider_id = provider_id


class APIError(NamedError):
    error_name = "APIError"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        is_retryable: bool = False,
        response_body: str | None = None,
    ):
        super().__init__(
            message,
            status_code=status_code,
            is_retryable=is_retryable,
            response_body=response_body,
        )
        self.status_code = status_code
        self.is_retryable = is_retryable


class ContextOverflowError(NamedError):
    error_name = "ContextOverflowError"

    def __init__(self, message: str, response_body: str | None = None):
        super().__init__(message, response_body=response_body)


class OutputLengthError(NamedError):
    error_name = "MessageOutputLengthError"


class CancellationError(NamedError):
    error_name = "MessageAbortedError"

    def __init__(self, message: str = "The operation was aborted."):
        super().__init__(message)


class StructuredOutputError(NamedError):
    error_name = "StructuredOutputError"

    def __init__(self, message: str, retries: int):
        super().__init__(message, retries=retries)
        self.retries = retries


class StepLimitError(NamedError):
    error_name = "StepLimitError"

    def __init__(self, steps: int):
        super().__init__(f"The turn stopped after {steps} steps without a final answer", steps=steps)
        self.steps = steps


class AttachmentResolutionError(NamedError):
    """Raised while resolving a user-supplied part. Always recovered into a synthetic text part."""

    error_name = "AttachmentResolutionError"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, path=path)
        self.path = path


class ToolInputError(NamedError):
    error_name = "ToolInputError"

    def __init__(self, tool: str, message: str):
        super().__init__(message, tool=tool)
        self.tool = tool


class BusyError(NamedError):
    error_name = "BusyError"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is busy", session_id=session_id)
        self.session_id = session_id


class NotFoundError(NamedError):
    error_name = "NotFoundError"


_OVERFLOW_PATTERNS = [
    re.compile(r"prompt is too long", re.IGNORECASE),
    re.compile(r"context[_ ]length[_ ]exceeded", re.IGNORECASE),
    re.compile(r"maximum context length", re.IGNORECASE),
    re.compile(r"exceeds the context window", re.IGNORECASE),
    re.compile(r"input is too long", re.IGNORECASE),
]


def _is_overflow_message(message: str) -> bool:
    return any(p.search(message) for p in _OVERFLOW_PATTERNS)


def _is_retryable_status(status_code: int | None) -> bool:
    if status_code is None:
        return True
    return status_code in (408, 409, 429) or status_code >= 500


def from_exception(exc: BaseException, *, provider_id: str) -> dict[str, Any]:
    """Map any exception raised during a turn to the serialized error form."""
    if isinstance(exc, NamedError):
        return exc.to_object()
    if isinstance(exc, asyncio.CancelledError):
        return CancellationError().to_object()
    if isinstance(exc, (TimeoutError, anthropic.APITimeoutError, openai.APITimeoutError)):
        return CancellationError("Provider call timed out").to_object()
    if isinstance(exc, (anthropic.AuthenticationError, openai.AuthenticationError)):
        return ProviderAuthError(provider_id, str(exc)).to_object()
    if isinstance(exc, (anthropic.APIStatusError, openai.APIStatusError)):
        message = str(exc)
        body = None
        if getattr(exc, "response", None) is not None:
            try:
                body = exc.response.text
            except Exception:
                body = None
        if _is_overflow_message(message) or (body and _is_overflow_message(body)):
            return ContextOverflowError(message, response_body=body).to_object()
        return APIError(
            message,
            status_code=exc.status_code,
            is_retryable=_is_retryable_status(exc.status_code),
            response_body=body,
        ).to_object()
    if isinstance(exc, (anthropic.APIConnectionError, openai.APIConnectionError)):
        return APIError(str(exc) or "Connection error", is_retryable=True).to_object()
    if isinstance(exc, ConnectionResetError):
        return APIError("Connection reset by server", is_retryable=True).to_object()
    return UnknownError(str(exc) or type(exc).__name__).to_object()
