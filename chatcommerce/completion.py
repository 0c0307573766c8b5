"""Completion request/response types and the bounded-retry client."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from .errors import FatalCompletionError, RetriesExhaustedError

logger = logging.getLogger("chatcommerce.completion")

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    """Structured tool invocation proposed by the completion service."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatMessage:
    role: str
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    tool_result: Optional[Dict[str, Any]] = None


@dataclass
class CompletionRequest:
    messages: List[ChatMessage]
    tools: List[Dict[str, Any]] = field(default_factory=list)
    tools_enabled: bool = True
    model: Optional[str] = None
    temperature: float = 0.7
    max_output_tokens: int = 1024


@dataclass
class Completion:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    tokens_used: int = 0

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class CompletionService(Protocol):
    async def send(self, request: CompletionRequest) -> Completion:
        ...


class RetryingCompletionClient:
    """Bounded-retry wrapper around a CompletionService."""

    def __init__(
        self,
        service: CompletionService,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Purpose: Configure retry bounds around a completion service.
        Inputs/Outputs: Inputs are the service, attempt cap, base delay and sleep hook.
        Side Effects / State: Stores configuration only.
        Dependencies: CompletionService protocol; asyncio.sleep by default.
        Failure Modes: max_attempts below 1 raises ValueError.
        If Removed: Every transient provider hiccup fails the whole turn.
        Testing Notes: Inject a recording sleep to assert the backoff schedule.
        """
        # Keep retry policy knobs; sleep is injectable for tests.
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._service = service
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    async def complete(self, request: CompletionRequest) -> Completion:
        """Purpose: Obtain a completion, retrying retryable failures with linear backoff.
        Inputs/Outputs: Input is a CompletionRequest; output is the Completion.
        Side Effects / State: Calls the service up to max_attempts times; sleeps
            attempt * base_delay seconds between attempts, never after the last one.
        Dependencies: Uses FatalCompletionError and RetriesExhaustedError.
        Failure Modes: Fatal errors propagate immediately; otherwise raises
            RetriesExhaustedError chained to the last error.
        If Removed: The orchestrator would call the raw service without resilience.
        Testing Notes: An always-failing service is called exactly max_attempts times
            with delays [1, 2] for the defaults.
        """
        # Try, classify, back off; cancellation is never swallowed.
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._service.send(request)
            except FatalCompletionError:
                raise
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "completion attempt=%s/%s status=failed error=%s",
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt < self._max_attempts:
                    await self._sleep(attempt * self._base_delay)
        assert last_error is not None
        raise RetriesExhaustedError(self._max_attempts, last_error) from last_error
