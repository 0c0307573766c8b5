"""Typed exceptions shared by the turn pipeline.

Validation failures and integrity issues are returned as data; only the
conditions below travel as exceptions, and the failure boundary is the single
place that catches whatever is left.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ChatCommerceError(Exception):
    """Base error carrying a machine-readable code and log context."""

    default_code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context: Dict[str, Any] = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.context}


class CompletionError(ChatCommerceError):
    """Any failure reported by the completion service."""

    default_code = "completion_error"


class FatalCompletionError(CompletionError):
    """Failure that must not be retried (credentials, content policy)."""

    default_code = "completion_fatal"


class TransientCompletionError(CompletionError):
    """Failure that may succeed on a later attempt (timeouts, 5xx, rate limits)."""

    default_code = "completion_transient"


class EmptyReplyError(CompletionError):
    """The model finished without any text to send to the customer."""

    default_code = "empty_reply"


class RetriesExhaustedError(FatalCompletionError):
    """Raised after the last retryable attempt fails."""

    default_code = "completion_retries_exhausted"

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"completion failed after {attempts} attempts: {last_error}",
            context={"attempts": attempts},
        )
        self.attempts = attempts
        self.last_error = last_error


class CreditLedgerError(ChatCommerceError):
    default_code = "credits_error"


class InsufficientCreditsError(CreditLedgerError):
    """The balance cannot cover the requested deduction."""

    default_code = "insufficient_credits"

    def __init__(self, user_id: str, requested: int) -> None:
        super().__init__(
            f"insufficient credits for user {user_id}",
            context={"user_id": user_id, "requested": requested},
        )
        self.user_id = user_id
        self.requested = requested


class CreditAccountNotFound(CreditLedgerError):
    default_code = "credits_account_not_found"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"no credit account for user {user_id}", context={"user_id": user_id})
        self.user_id = user_id


class ToolExecutionError(ChatCommerceError):
    """Domain failure inside a tool handler; folded into a failure tool result."""

    default_code = "tool_failed"
