from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

BASE_DIR = Path(__file__).resolve().parent

DEFAULT_FALLBACK_MESSAGE = "Désolé, je réfléchis trop. Un petit instant... 🤔"
DEFAULT_CREDITS_EXHAUSTED_MESSAGE = (
    "Le service est momentanément indisponible. Merci de réessayer un peu plus tard."
)


@dataclass(frozen=True)
class Settings:
    """Configuration container for the completion service, ledger, and turn limits."""
    gemini_api_key: str
    gemini_model: str
    max_attempts: int
    retry_base_delay: float
    history_window: int
    temperature: float
    max_output_tokens: int
    turn_timeout: float
    database_url: str
    knowledge_dir: Path
    catalog_dir: Path
    prompts_dir: Path
    knowledge_topk: int
    fallback_message: str
    credits_exhausted_message: str
    sentry_dsn: Optional[str] = None
    tool_credit_costs: Dict[str, int] = field(default_factory=dict)


def load_settings() -> Settings:
    """Purpose: Load configuration from environment variables and defaults.
    Inputs/Outputs: No inputs; returns a Settings instance.
    Side Effects / State: Reads environment variables and filesystem paths.
    Dependencies: Uses os.getenv, BASE_DIR and parse_tool_costs.
    Failure Modes: Non-numeric MAX_ATTEMPTS/HISTORY_WINDOW/TURN_TIMEOUT raise ValueError.
    If Removed: App cannot wire the orchestrator and fails at startup.
    Testing Notes: Verify defaults and overrides via monkeypatched environment variables.
    """
    # Resolve data directories, then build Settings.
    data_dir = Path(os.getenv("DATA_DIR") or (BASE_DIR / "data")).resolve()
    knowledge_dir = Path(os.getenv("KNOWLEDGE_DIR") or (data_dir / "knowledge")).resolve()
    catalog_dir = Path(os.getenv("CATALOG_DIR") or (data_dir / "catalogs")).resolve()

    return Settings(
        gemini_api_key=os.getenv("GEMINI_API_KEY", ""),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
        retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "1.0")),
        history_window=int(os.getenv("HISTORY_WINDOW", "15")),
        temperature=float(os.getenv("TEMPERATURE", "0.7")),
        max_output_tokens=int(os.getenv("MAX_OUTPUT_TOKENS", "1024")),
        turn_timeout=float(os.getenv("TURN_TIMEOUT", "90")),
        database_url=os.getenv("DATABASE_URL") or f"sqlite:///{data_dir / 'credits.db'}",
        knowledge_dir=knowledge_dir,
        catalog_dir=catalog_dir,
        prompts_dir=(BASE_DIR / "prompts").resolve(),
        knowledge_topk=int(os.getenv("KNOWLEDGE_TOPK", "3")),
        fallback_message=os.getenv("FALLBACK_MESSAGE") or DEFAULT_FALLBACK_MESSAGE,
        credits_exhausted_message=os.getenv("CREDITS_EXHAUSTED_MESSAGE") or DEFAULT_CREDITS_EXHAUSTED_MESSAGE,
        sentry_dsn=os.getenv("SENTRY_DSN") or None,
        tool_credit_costs=parse_tool_costs(os.getenv("TOOL_CREDIT_COSTS", "")),
    )


def parse_tool_costs(raw: str) -> Dict[str, int]:
    """Purpose: Parse a "name:cost,name:cost" string into a billable-tool map.
    Inputs/Outputs: Input is the raw env string; output maps tool name to credit cost.
    Side Effects / State: None.
    Dependencies: Used by load_settings for TOOL_CREDIT_COSTS.
    Failure Modes: Entries without a colon or with a non-positive cost are skipped;
        a non-integer cost raises ValueError.
    If Removed: No tool is billable and orders never touch the ledger.
    Testing Notes: "create_order:2, send_image" yields {"create_order": 2}.
    """
    # Split on commas and keep well-formed positive entries.
    costs: Dict[str, int] = {}
    for entry in (raw or "").split(","):
        name, sep, value = entry.partition(":")
        name = name.strip()
        if not sep or not name:
            continue
        cost = int(value.strip())
        if cost > 0:
            costs[name] = cost
    return costs
