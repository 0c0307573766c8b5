from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TurnRequest(BaseModel):
    """Request payload for the playground turn API."""
    agent_id: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1)
    session_id: Optional[str] = Field(default=None)
    recipient: Optional[str] = Field(default=None)


class IntegrityIssueSpec(BaseModel):
    type: str
    mentioned_price: int
    valid_prices: List[int]


class TurnResponse(BaseModel):
    """Response payload returned by the turn API."""
    reply_text: str
    session_id: str
    tokens_used: int
    credits_charged: int
    integrity_issues: List[IntegrityIssueSpec]
    tool_results: List[Dict[str, Any]]
    degraded: bool
    short_circuited: bool
    thinking_logs: List[Dict[str, str]]


class CreditTopUp(BaseModel):
    amount: int = Field(gt=0)


class CreditBalance(BaseModel):
    owner_id: str
    balance: int


class StoredMessage(BaseModel):
    """Persisted message record with optional metadata."""
    role: str
    content: str
    timestamp: float
    meta: Optional[Dict[str, Any]] = None


class SessionSummary(BaseModel):
    """Lightweight session summary for listing."""
    session_id: str
    agent_id: str
    title: str
    updated_at: float
