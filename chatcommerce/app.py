from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

from .agent_directory import AgentDirectory
from .completion import ASSISTANT, USER, RetryingCompletionClient
from .config import Settings, load_settings
from .credits import CreditsLedger
from .failure import ChannelRegistry, FailureBoundary
from .gemini_client import GeminiCompletionService
from .knowledge.knowledge_store import KnowledgeStore
from .models import CreditBalance, CreditTopUp, TurnRequest, TurnResponse
from .pipeline import TurnInput, TurnOrchestrator
from .prompt_loader import load_prompt
from .session_store import SessionStore
from .telemetry import init_telemetry
from .tools import build_default_registry

BASE_DIR = Path(__file__).resolve().parent

ENV_PATH = BASE_DIR / ".env"
if ENV_PATH.exists():
    load_dotenv(ENV_PATH, override=True)

log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
log_level = getattr(logging, log_level_name, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

logging.getLogger("chatcommerce").setLevel(log_level)


@dataclass
class AppServices:
    """Everything the HTTP layer needs, built once per process."""
    boundary: FailureBoundary
    agents: AgentDirectory
    sessions: SessionStore
    ledger: Optional[CreditsLedger]
    history_window: int = 15


def build_services(settings: Settings) -> AppServices:
    """Purpose: Wire the production object graph from Settings.
    Inputs/Outputs: Input is Settings; output is AppServices.
    Side Effects / State: Configures Gemini and Sentry, opens the ledger database,
        creates data directories.
    Dependencies: Uses every runtime component of the package.
    Failure Modes: Missing GEMINI_API_KEY raises ValueError; database errors propagate.
    If Removed: create_app has nothing to serve.
    Testing Notes: Tests pass a hand-built AppServices to create_app instead.
    """
    # Build leaf services first, then the orchestrator and its boundary.
    init_telemetry(settings.sentry_dsn)
    settings.catalog_dir.mkdir(parents=True, exist_ok=True)
    settings.knowledge_dir.mkdir(parents=True, exist_ok=True)
    ledger = CreditsLedger.from_url(settings.database_url)
    client = RetryingCompletionClient(
        GeminiCompletionService(settings),
        max_attempts=settings.max_attempts,
        base_delay=settings.retry_base_delay,
    )
    orchestrator = TurnOrchestrator(
        completion_client=client,
        tool_executor=build_default_registry(),
        ledger=ledger,
        knowledge=KnowledgeStore(settings.knowledge_dir),
        history_window=settings.history_window,
        knowledge_topk=settings.knowledge_topk,
        tool_costs=settings.tool_credit_costs,
        credits_exhausted_message=settings.credits_exhausted_message,
        prompt_template=load_prompt(settings.prompts_dir / "system_prompt.md"),
        model=settings.gemini_model,
        temperature=settings.temperature,
        max_output_tokens=settings.max_output_tokens,
    )
    boundary = FailureBoundary(
        orchestrator,
        ChannelRegistry(),
        fallback_message=settings.fallback_message,
        timeout=settings.turn_timeout,
    )
    sessions = SessionStore(settings.catalog_dir.parent / "sessions.json", max_sessions=500)
    return AppServices(
        boundary=boundary,
        agents=AgentDirectory(settings.catalog_dir),
        sessions=sessions,
        ledger=ledger,
        history_window=settings.history_window,
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Purpose: Build the FastAPI playground around the turn pipeline.
    Inputs/Outputs: Optional AppServices (built from env when omitted); returns FastAPI.
    Side Effects / State: Registers routes bound to the given services.
    Dependencies: Uses build_services/load_settings when services is None.
    Failure Modes: Startup errors from build_services propagate.
    If Removed: There is no HTTP entrypoint; run with `uvicorn chatcommerce.app:create_app --factory`.
    Testing Notes: Wrap the returned app in fastapi.testclient.TestClient.
    """
    # Bind routes to one services instance.
    services = services or build_services(load_settings())
    app = FastAPI(title="Chat Commerce Assistant")

    @app.get("/api/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.post("/api/turn", response_model=TurnResponse)
    async def run_turn(request: TurnRequest) -> TurnResponse:
        """Purpose: Run one conversational turn for an agent and persist the exchange.
        Inputs/Outputs: Input is TurnRequest; output is TurnResponse.
        Side Effects / State: Appends user/assistant messages to the SessionStore;
            the pipeline may charge credits and create orders.
        Dependencies: Uses AgentDirectory, SessionStore and FailureBoundary.handle.
        Failure Modes: Unknown agents return 404; pipeline failures return the fallback
            reply with degraded=true instead of a 500.
        If Removed: Merchants cannot test their assistant from the dashboard.
        Testing Notes: Send a message with a fake orchestrator and check persistence.
        """
        # Resolve agent and history, run the guarded turn, store the exchange.
        resolved = services.agents.get(request.agent_id)
        if resolved is None:
            raise HTTPException(status_code=404, detail=f"unknown agent {request.agent_id}")
        profile, catalog = resolved

        turn = TurnInput(
            agent=profile,
            catalog=catalog,
            user_message=request.message,
            history=services.sessions.history(request.session_id, services.history_window) if request.session_id else [],
            recipient=request.recipient or "",
        )
        if request.session_id:
            turn.session_id = request.session_id
        result = await services.boundary.handle(turn)

        services.sessions.add_message(turn.session_id, profile.agent_id, USER, request.message)
        services.sessions.add_message(
            turn.session_id,
            profile.agent_id,
            ASSISTANT,
            result.reply_text,
            meta={"degraded": result.degraded, "tokens_used": result.tokens_used},
        )
        return TurnResponse(
            reply_text=result.reply_text,
            session_id=turn.session_id,
            tokens_used=result.tokens_used,
            credits_charged=result.credits_charged,
            integrity_issues=[issue.to_dict() for issue in result.integrity_issues],
            tool_results=result.tool_results,
            degraded=result.degraded,
            short_circuited=result.short_circuited,
            thinking_logs=result.thinking_logs,
        )

    @app.get("/api/sessions")
    def list_sessions(agent_id: Optional[str] = None) -> List[dict]:
        return [summary.model_dump() for summary in services.sessions.list_sessions(agent_id)]

    @app.get("/api/sessions/{session_id}")
    def get_session(session_id: str) -> dict:
        messages = services.sessions.get_messages(session_id)
        return {
            "session_id": session_id,
            "messages": [message.model_dump() for message in messages],
        }

    @app.get("/api/credits/{owner_id}", response_model=CreditBalance)
    def get_balance(owner_id: str) -> CreditBalance:
        balance = services.ledger.balance(owner_id) if services.ledger else None
        if balance is None:
            raise HTTPException(status_code=404, detail=f"no credit account for {owner_id}")
        return CreditBalance(owner_id=owner_id, balance=balance)

    @app.post("/api/credits/{owner_id}", response_model=CreditBalance)
    def top_up(owner_id: str, payload: CreditTopUp) -> CreditBalance:
        if services.ledger is None:
            raise HTTPException(status_code=503, detail="credits ledger not configured")
        balance = services.ledger.top_up(owner_id, payload.amount)
        return CreditBalance(owner_id=owner_id, balance=balance)

    return app

