"""Turn orchestration for the messaging commerce assistant.

Role:
    Turns one inbound customer message into one verified reply. It owns the
    TurnContext contract and the step-level decisions run by the TurnRunner.

Turn data contract (core fields passed across steps):
    - turn: the TurnInput (agent profile, catalog snapshot, history, message).
    - messages: transcript sent to the completion service, grown by each step.
    - first_completion / second_completion: raw completion outputs.
    - tool_results: one result dict per executed (or blocked) tool call.
    - integrity: IntegrityResult of the final reply.
    - credits_charged / short_circuited: billing outcome of the turn.

Step contracts:
    BUILD_CONTEXT:
        Credit gate, bounded history, best-effort knowledge, system prompt.
    FIRST_COMPLETION:
        Completion with tools enabled; plain text goes straight to INTEGRITY_CHECK.
    TOOL_DISPATCH:
        Sequential pre-validation, billing and execution of each tool call.
    SECOND_COMPLETION:
        Completion over the full transcript with tools disabled.
    INTEGRITY_CHECK:
        Price verification of the reply; issues are recorded, never enforced.
    DONE:
        Charges the per-turn cost and freezes the reply.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .catalog import Catalog
from .completion import (
    ASSISTANT,
    SYSTEM,
    TOOL,
    USER,
    ChatMessage,
    Completion,
    CompletionRequest,
    RetryingCompletionClient,
    ToolCall,
)
from .credits import CreditsLedger
from .errors import EmptyReplyError, InsufficientCreditsError, ToolExecutionError
from .integrity import DEFAULT_CURRENCY_TOKENS, IntegrityResult, PriceIssue, verify_prices
from .knowledge.knowledge_store import KnowledgeRetriever
from .prompt_loader import format_catalog, format_knowledge, load_prompt, render_prompt
from .tools import TOOL_DEFINITIONS, MerchantContext, ToolExecutor, failure_result
from .turn_runtime import TurnRunner, TurnStep
from .utils import coerce_arguments, sanitize_for_log
from .validation import ValidationResult, validate_tool_call

logger = logging.getLogger("chatcommerce.pipeline")

BUILD_CONTEXT = "BUILD_CONTEXT"
FIRST_COMPLETION = "FIRST_COMPLETION"
TOOL_DISPATCH = "TOOL_DISPATCH"
SECOND_COMPLETION = "SECOND_COMPLETION"
INTEGRITY_CHECK = "INTEGRITY_CHECK"
DONE = "DONE"
ERROR = "ERROR"

DEFAULT_PROMPT_PATH = Path(__file__).resolve().parent / "prompts" / "system_prompt.md"

Validator = Callable[[ToolCall, Catalog], ValidationResult]
Verifier = Callable[..., IntegrityResult]


@dataclass(frozen=True)
class AgentProfile:
    """Merchant agent configuration relevant to a turn."""
    agent_id: str
    owner_id: str
    name: str = "Assistant"
    language: str = "français"
    instructions: str = ""
    currency: str = "FCFA"
    voice_enabled: bool = False

    @classmethod
    def from_raw(cls, agent_id: str, raw: Dict[str, Any]) -> "AgentProfile":
        return cls(
            agent_id=agent_id,
            owner_id=str(raw.get("owner_id") or raw.get("user_id") or agent_id),
            name=str(raw.get("name") or "Assistant"),
            language=str(raw.get("language") or "français"),
            instructions=str(raw.get("instructions") or raw.get("ai_instructions") or ""),
            currency=str(raw.get("currency") or "FCFA"),
            voice_enabled=bool(raw.get("voice_enabled", False)),
        )


@dataclass
class TurnInput:
    agent: AgentProfile
    catalog: Catalog
    user_message: str
    history: List[ChatMessage] = field(default_factory=list)
    recipient: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class TurnResult:
    """Outcome of one turn, including degraded outcomes produced by the boundary."""
    reply_text: str
    session_id: str = ""
    tokens_used: int = 0
    credits_charged: int = 0
    integrity_issues: List[PriceIssue] = field(default_factory=list)
    tool_results: List[Dict[str, Any]] = field(default_factory=list)
    state: str = DONE
    short_circuited: bool = False
    degraded: bool = False
    thinking_logs: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class TurnContext:
    """Mutable context passed through each turn step."""
    turn: TurnInput
    state: str = BUILD_CONTEXT
    failed_state: str = ""
    messages: List[ChatMessage] = field(default_factory=list)
    knowledge: List[str] = field(default_factory=list)
    first_completion: Optional[Completion] = None
    second_completion: Optional[Completion] = None
    tool_results: List[Dict[str, Any]] = field(default_factory=list)
    integrity: Optional[IntegrityResult] = None
    reply_text: str = ""
    tokens_used: int = 0
    credits_charged: int = 0
    short_circuited: bool = False
    thinking_logs: List[Dict[str, str]] = field(default_factory=list)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.first_completion and self.first_completion.tool_calls)

    def log(self, event: str, detail: str, status: str = "success") -> None:
        """Purpose: Append a structured log entry for the HTTP playground and debugging.
        Inputs/Outputs: Inputs are event, detail, status; no return value.
        Side Effects / State: Mutates thinking_logs list on the context.
        Dependencies: Used by turn steps.
        Failure Modes: None; always appends.
        If Removed: The playground loses step-by-step logs.
        Testing Notes: Ensure entries appear in TurnResult.thinking_logs.
        """
        # Store a normalized log entry.
        self.thinking_logs.append({"event": event, "detail": detail, "status": status})


class TurnOrchestrator:
    def __init__(
        self,
        completion_client: RetryingCompletionClient,
        tool_executor: ToolExecutor,
        ledger: Optional[CreditsLedger] = None,
        knowledge: Optional[KnowledgeRetriever] = None,
        validator: Validator = validate_tool_call,
        verifier: Verifier = verify_prices,
        history_window: int = 15,
        knowledge_topk: int = 3,
        tool_costs: Optional[Dict[str, int]] = None,
        credits_exhausted_message: str = "",
        prompt_template: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_output_tokens: int = 1024,
    ) -> None:
        """Purpose: Wire the turn pipeline and its collaborators.
        Inputs/Outputs: Inputs are the retrying completion client, tool executor, optional
            ledger and knowledge retriever, injectable validator/verifier and limits.
        Side Effects / State: Builds a TurnRunner with the ordered turn states.
        Dependencies: Uses TurnRunner/TurnStep and the step methods on this class.
        Failure Modes: None at init; runtime errors surface from process_turn.
        If Removed: Inbound messages have nothing to process them.
        Testing Notes: Instantiate with fakes and a sqlite ledger.
        """
        # Store collaborators and build the step runner.
        self._completion = completion_client
        self._tools = tool_executor
        self._ledger = ledger
        self._knowledge = knowledge
        self._validator = validator
        self._verifier = verifier
        self._history_window = history_window
        self._knowledge_topk = knowledge_topk
        self._tool_costs = dict(tool_costs or {})
        self._credits_exhausted_message = credits_exhausted_message
        self._prompt_template = prompt_template if prompt_template is not None else load_prompt(DEFAULT_PROMPT_PATH)
        self._tool_definitions = list(tools if tools is not None else TOOL_DEFINITIONS)
        self._model = model
        self._temperature = temperature
        self._max_output_tokens = max_output_tokens
        self._runner = TurnRunner(
            steps=[
                TurnStep(BUILD_CONTEXT, self._step_build_context),
                TurnStep(FIRST_COMPLETION, self._step_first_completion, skip_if=_short_circuited),
                TurnStep(TOOL_DISPATCH, self._step_tool_dispatch, skip_if=_no_tool_calls),
                TurnStep(SECOND_COMPLETION, self._step_second_completion, skip_if=_no_tool_calls),
                TurnStep(INTEGRITY_CHECK, self._step_integrity_check, skip_if=_short_circuited),
                TurnStep(DONE, self._step_done),
            ],
            error_state=ERROR,
        )

    async def process_turn(self, turn: TurnInput) -> TurnResult:
        """Purpose: Run the full turn pipeline for one inbound message.
        Inputs/Outputs: Input is a TurnInput; output is a TurnResult with the reply,
            token usage, credits charged, integrity issues and tool results.
        Side Effects / State: Calls the completion service, executes tools, mutates the
            credits ledger. Does not send anything to the customer.
        Dependencies: Uses TurnRunner.run over the TurnContext.
        Failure Modes: Any step exception propagates after the context enters ERROR.
        If Removed: The failure boundary and HTTP surface cannot answer customers.
        Testing Notes: Plain-text completion skips TOOL_DISPATCH and SECOND_COMPLETION.
        """
        # Build the context and execute the steps.
        context = TurnContext(turn=turn)
        logger.info(
            "turn=%s agent=%s message_chars=%s",
            turn.session_id,
            turn.agent.agent_id,
            len(turn.user_message or ""),
        )
        try:
            await self._runner.run(context)
        except Exception as exc:
            logger.warning(
                "turn=%s step=%s status=error error=%s",
                turn.session_id,
                context.failed_state,
                exc,
            )
            raise
        return TurnResult(
            reply_text=context.reply_text,
            session_id=turn.session_id,
            tokens_used=context.tokens_used,
            credits_charged=context.credits_charged,
            integrity_issues=list(context.integrity.issues) if context.integrity else [],
            tool_results=context.tool_results,
            state=context.state,
            short_circuited=context.short_circuited,
            thinking_logs=context.thinking_logs,
        )

    async def _step_build_context(self, context: TurnContext) -> None:
        """Purpose: Gate on credits and assemble the transcript for the first completion.
        Inputs/Outputs: Input is TurnContext; sets messages/knowledge or short-circuits.
        Side Effects / State: One ledger read; one knowledge lookup in a worker thread.
        Dependencies: Uses CreditsLedger.ahas_balance, KnowledgeRetriever.search and
            the prompt helpers.
        Failure Modes: Knowledge errors are logged and ignored; ledger errors propagate.
        If Removed: The model receives no catalog, history or merchant instructions.
        Testing Notes: Balance 0 yields the credits-exhausted reply with no completion.
        """
        # Merchants without credits get the fixed reply and no completion call.
        turn = context.turn
        if self._ledger is not None and not await self._ledger.ahas_balance(turn.agent.owner_id):
            context.short_circuited = True
            context.reply_text = self._credits_exhausted_message
            context.log(BUILD_CONTEXT, "credits exhausted", status="skipped")
            logger.info("turn=%s step=%s credits=exhausted", turn.session_id, BUILD_CONTEXT)
            return

        history = list(turn.history)
        if self._history_window > 0:
            history = history[-self._history_window :]
        else:
            history = []

        context.knowledge = await self._lookup_knowledge(turn)
        system_prompt = render_prompt(
            self._prompt_template,
            {
                "AGENT_NAME": turn.agent.name,
                "LANGUAGE": turn.agent.language,
                "CURRENCY": turn.agent.currency,
                "MERCHANT_INSTRUCTIONS": turn.agent.instructions,
                "CATALOG": format_catalog(turn.catalog, currency=turn.agent.currency),
                "KNOWLEDGE": format_knowledge(context.knowledge),
            },
        )
        context.messages = [ChatMessage(role=SYSTEM, content=system_prompt), *history]
        context.messages.append(ChatMessage(role=USER, content=turn.user_message))
        context.log(BUILD_CONTEXT, f"history={len(history)} knowledge={len(context.knowledge)}")
        logger.info(
            "turn=%s step=%s history=%s knowledge=%s",
            turn.session_id,
            BUILD_CONTEXT,
            len(history),
            len(context.knowledge),
        )

    async def _lookup_knowledge(self, turn: TurnInput) -> List[str]:
        if self._knowledge is None:
            return []
        try:
            return await asyncio.to_thread(
                self._knowledge.search,
                turn.agent.agent_id,
                turn.user_message,
                self._knowledge_topk,
            )
        except Exception as exc:
            logger.warning("turn=%s step=%s knowledge=failed error=%s", turn.session_id, BUILD_CONTEXT, exc)
            return []

    async def _step_first_completion(self, context: TurnContext) -> None:
        # Tools enabled; a plain-text answer becomes the reply directly.
        completion = await self._completion.complete(self._request(context.messages, tools_enabled=True))
        context.first_completion = completion
        context.tokens_used += completion.tokens_used
        context.reply_text = completion.text
        if not completion.tool_calls:
            _require_reply(context.reply_text, FIRST_COMPLETION)
        context.log(FIRST_COMPLETION, f"tool_calls={len(completion.tool_calls)}")
        logger.info(
            "turn=%s step=%s tool_calls=%s tokens=%s",
            context.turn.session_id,
            FIRST_COMPLETION,
            [call.name for call in completion.tool_calls],
            completion.tokens_used,
        )

    async def _step_tool_dispatch(self, context: TurnContext) -> None:
        """Purpose: Validate, bill and execute each requested tool call in order.
        Inputs/Outputs: Input is TurnContext; appends one result per call and the
            matching assistant/tool messages to the transcript.
        Side Effects / State: May deduct credits and execute orders or bookings.
        Dependencies: Uses the injected validator, CreditsLedger and ToolExecutor.
        Failure Modes: Pre-check rejections, insufficient credits and ToolExecutionError
            become failure results; other exceptions refund the charge and propagate.
            Calls are never retried.
        If Removed: Orders proposed by the model are never created.
        Testing Notes: A missing variant yields blocked_by_precheck and no executor call.
        """
        # Record the assistant's tool request, then answer each call in order.
        first = context.first_completion
        assert first is not None
        turn = context.turn
        merchant = MerchantContext(
            agent_id=turn.agent.agent_id,
            owner_id=turn.agent.owner_id,
            catalog=turn.catalog,
            session_id=turn.session_id,
        )
        context.messages.append(ChatMessage(role=ASSISTANT, content=first.text, tool_calls=list(first.tool_calls)))
        for call in first.tool_calls:
            result = await self._dispatch_one(call, merchant, context)
            context.tool_results.append({"tool": call.name, "call_id": call.id, **result})
            context.messages.append(
                ChatMessage(role=TOOL, name=call.name, tool_call_id=call.id, tool_result=result)
            )

    async def _dispatch_one(self, call: ToolCall, merchant: MerchantContext, context: TurnContext) -> Dict[str, Any]:
        session_id = context.turn.session_id
        arguments = coerce_arguments(call.arguments)
        if arguments is None:
            logger.warning("turn=%s tool=%s status=invalid_arguments", session_id, call.name)
            return failure_result("invalid arguments")

        validation = self._validator(replace(call, arguments=arguments), merchant.catalog)
        if not validation.valid:
            context.log(TOOL_DISPATCH, f"{call.name} blocked: {validation.error}", status="blocked")
            logger.info("turn=%s tool=%s status=blocked_by_precheck", session_id, call.name)
            return {"success": False, "blocked_by_precheck": True, "error": validation.error}

        cost = self._tool_costs.get(call.name, 0)
        if cost and self._ledger is not None:
            try:
                await self._ledger.adeduct(merchant.owner_id, cost)
            except InsufficientCreditsError as exc:
                context.log(TOOL_DISPATCH, f"{call.name} refused: insufficient credits", status="blocked")
                logger.info("turn=%s tool=%s status=insufficient_credits", session_id, call.name)
                return failure_result("insufficient credits to perform this action", code=exc.code)
            context.credits_charged += cost

        logger.info("turn=%s tool=%s args=%s", session_id, call.name, sanitize_for_log(arguments))
        try:
            result = await self._tools.execute(call.name, arguments, merchant)
        except ToolExecutionError as exc:
            await self._refund(merchant.owner_id, cost, context)
            context.log(TOOL_DISPATCH, f"{call.name} failed: {exc.message}", status="failed")
            logger.info("turn=%s tool=%s status=failed error=%s", session_id, call.name, exc.message)
            return {"success": False, **exc.to_dict()}
        except Exception:
            # The tool never completed, so the charge goes back before the error escapes.
            await self._refund(merchant.owner_id, cost, context)
            raise

        context.log(TOOL_DISPATCH, f"{call.name} success={result.get('success')}")
        return result

    async def _step_second_completion(self, context: TurnContext) -> None:
        # Same transcript plus tool results; tools disabled so the model must answer.
        completion = await self._completion.complete(self._request(context.messages, tools_enabled=False))
        context.second_completion = completion
        context.tokens_used += completion.tokens_used
        context.reply_text = completion.text or context.reply_text
        _require_reply(context.reply_text, SECOND_COMPLETION)
        context.log(SECOND_COMPLETION, f"chars={len(context.reply_text)}")
        logger.info("turn=%s step=%s tokens=%s", context.turn.session_id, SECOND_COMPLETION, completion.tokens_used)

    async def _step_integrity_check(self, context: TurnContext) -> None:
        # Observability only: the reply is never altered or blocked.
        currency_tokens = tuple(dict.fromkeys((context.turn.agent.currency, *DEFAULT_CURRENCY_TOKENS)))
        result = self._verifier(context.reply_text, context.turn.catalog, currency_tokens)
        context.integrity = result
        if result.valid:
            context.log(INTEGRITY_CHECK, "prices verified")
            return
        for issue in result.issues:
            logger.warning(
                "turn=%s step=%s issue=%s mentioned_price=%s valid_sample=%s",
                context.turn.session_id,
                INTEGRITY_CHECK,
                issue.issue_type,
                issue.mentioned_price,
                list(issue.valid_sample),
            )
        context.log(INTEGRITY_CHECK, f"issues={len(result.issues)}", status="warning")

    async def _step_done(self, context: TurnContext) -> None:
        """Purpose: Charge the per-turn cost once the reply exists.
        Inputs/Outputs: Input is TurnContext; updates credits_charged.
        Side Effects / State: One ledger deduction unless the turn short-circuited.
        Dependencies: Uses CreditsLedger.cost and CreditsLedger.adeduct.
        Failure Modes: A balance drained by a concurrent turn is logged; the reply stands.
        If Removed: Merchants are never billed for AI replies.
        Testing Notes: Voice-enabled agents are charged 5 credits per reply.
        """
        # Bill the reply; a lost race on the last credit never drops the answer.
        turn = context.turn
        if context.short_circuited or self._ledger is None:
            return
        cost = self._ledger.cost(turn.agent.voice_enabled)
        try:
            await self._ledger.adeduct(turn.agent.owner_id, cost)
        except InsufficientCreditsError:
            context.log(DONE, "turn charge skipped: insufficient credits", status="warning")
            logger.warning("turn=%s step=%s credits=insufficient cost=%s", turn.session_id, DONE, cost)
            return
        context.credits_charged += cost
        logger.info("turn=%s step=%s credits_charged=%s tokens=%s", turn.session_id, DONE, context.credits_charged, context.tokens_used)

    async def _refund(self, owner_id: str, cost: int, context: TurnContext) -> None:
        if not cost or self._ledger is None:
            return
        await self._ledger.aadd(owner_id, cost)
        context.credits_charged -= cost
        logger.info("turn=%s step=%s credits_refunded=%s", context.turn.session_id, TOOL_DISPATCH, cost)

    def _request(self, messages: List[ChatMessage], tools_enabled: bool) -> CompletionRequest:
        return CompletionRequest(
            messages=list(messages),
            tools=self._tool_definitions,
            tools_enabled=tools_enabled,
            model=self._model,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
        )


def _require_reply(text: str, state: str) -> None:
    # Blank replies are failures; the boundary answers them with the fallback.
    if not (text or "").strip():
        raise EmptyReplyError(f"completion returned no reply text at {state}", context={"state": state})


def _short_circuited(context: TurnContext) -> bool:
    return context.short_circuited


def _no_tool_calls(context: TurnContext) -> bool:
    return context.short_circuited or not context.has_tool_calls
