"""Outermost guard of a turn: reply delivery and the single fallback message."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, Dict, Optional, Protocol

from .config import DEFAULT_FALLBACK_MESSAGE
from .errors import EmptyReplyError
from .pipeline import ERROR, TurnInput, TurnOrchestrator, TurnResult
from .telemetry import report_exception

logger = logging.getLogger("chatcommerce.failure")

Reporter = Callable[..., Optional[str]]


class MessagingChannel(Protocol):
    async def send(self, recipient: str, text: str) -> None:
        ...


class ChannelRegistry:
    """Connected messaging channels, keyed by agent id."""

    def __init__(self) -> None:
        self._channels: Dict[str, MessagingChannel] = {}
        self._lock = threading.Lock()

    def register(self, agent_id: str, channel: MessagingChannel) -> None:
        # Called when an agent's channel connects; replaces any stale entry.
        with self._lock:
            self._channels[agent_id] = channel
        logger.info("agent=%s channel=registered", agent_id)

    def unregister(self, agent_id: str, channel: Optional[MessagingChannel] = None) -> None:
        # A late disconnect of an old channel must not drop its replacement.
        with self._lock:
            current = self._channels.get(agent_id)
            if current is None or (channel is not None and current is not channel):
                return
            del self._channels[agent_id]
        logger.info("agent=%s channel=unregistered", agent_id)

    def get(self, agent_id: str) -> Optional[MessagingChannel]:
        with self._lock:
            return self._channels.get(agent_id)

    def __contains__(self, agent_id: object) -> bool:
        with self._lock:
            return agent_id in self._channels


class FailureBoundary:
    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        channels: ChannelRegistry,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
        timeout: Optional[float] = 90.0,
        reporter: Reporter = report_exception,
    ) -> None:
        """Purpose: Wrap the orchestrator so every turn ends with some reply.
        Inputs/Outputs: Inputs are the orchestrator, channel registry, fallback text,
            turn timeout (None disables it) and telemetry reporter.
        Side Effects / State: Stores collaborators only.
        Dependencies: TurnOrchestrator, ChannelRegistry, telemetry.report_exception.
        Failure Modes: None at init.
        If Removed: A failed turn leaves the customer without any answer.
        Testing Notes: Inject a recording reporter and a fake channel.
        """
        # Keep collaborators; the reporter is injectable for tests.
        self._orchestrator = orchestrator
        self._channels = channels
        self._fallback_message = fallback_message
        self._timeout = timeout
        self._reporter = reporter

    async def handle(self, turn: TurnInput) -> TurnResult:
        """Purpose: Run one turn, deliver its reply, and degrade gracefully on failure.
        Inputs/Outputs: Input is a TurnInput; output is the TurnResult, or a degraded
            result carrying the fallback text when anything failed.
        Side Effects / State: Sends through the agent's registered channel, if any;
            reports failures to telemetry.
        Dependencies: Uses TurnOrchestrator.process_turn and ChannelRegistry.get.
        Failure Modes: Never raises for ordinary exceptions; cancellation propagates.
        If Removed: Errors escape to the transport and the customer hears nothing.
        Testing Notes: A failing step or a blank reply gives exactly one fallback send, even
            if that send fails.
        """
        # Bound the turn, then deliver; any failure takes the single fallback path.
        try:
            if self._timeout:
                result = await asyncio.wait_for(self._orchestrator.process_turn(turn), timeout=self._timeout)
            else:
                result = await self._orchestrator.process_turn(turn)
        except Exception as exc:
            return await self._fail(turn, exc)

        if not (result.reply_text or "").strip():
            return await self._fail(turn, EmptyReplyError("turn finished without reply text"), partial=result)

        channel = self._channels.get(turn.agent.agent_id)
        if channel is None or not turn.recipient:
            return result
        try:
            await channel.send(turn.recipient, result.reply_text)
        except Exception as exc:
            return await self._fail(turn, exc, partial=result)
        return result

    async def _fail(self, turn: TurnInput, error: Exception, partial: Optional[TurnResult] = None) -> TurnResult:
        tags = {"agent_id": turn.agent.agent_id, "session_id": turn.session_id, "error_type": type(error).__name__}
        code = getattr(error, "code", None)
        if code:
            tags["error_code"] = code
        self._reporter(error, tags=tags)
        logger.error(
            "turn=%s agent=%s status=failed error_type=%s error=%s",
            turn.session_id,
            turn.agent.agent_id,
            type(error).__name__,
            error,
            exc_info=error,
        )

        channel = self._channels.get(turn.agent.agent_id)
        if channel is not None and turn.recipient:
            try:
                await channel.send(turn.recipient, self._fallback_message)
            except Exception as send_error:
                logger.error(
                    "turn=%s agent=%s fallback=failed error=%s",
                    turn.session_id,
                    turn.agent.agent_id,
                    send_error,
                )
        else:
            logger.info("turn=%s agent=%s fallback=no_channel", turn.session_id, turn.agent.agent_id)

        return TurnResult(
            reply_text=self._fallback_message,
            session_id=turn.session_id,
            tokens_used=partial.tokens_used if partial else 0,
            credits_charged=partial.credits_charged if partial else 0,
            tool_results=partial.tool_results if partial else [],
            state=ERROR,
            degraded=True,
        )
