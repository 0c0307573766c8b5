from __future__ import annotations

import heapq
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .completion import ASSISTANT, USER, ChatMessage
from .models import SessionSummary, StoredMessage

_REPLAYABLE_ROLES = (USER, ASSISTANT)
_UNTITLED = "New chat"


class SessionStore:
    """Per-session conversation log for the HTTP surface, mirrored to one JSON file."""

    def __init__(self, path: Optional[Path] = None, max_sessions: Optional[int] = None) -> None:
        """Purpose: Open the conversation log, restoring it from `path` when it exists.
        Inputs/Outputs: Inputs are an optional JSON file and a cap on kept sessions.
        Side Effects / State: Reads the file once; keeps everything in memory afterwards.
        Dependencies: StoredMessage/SessionSummary pydantic models.
        Failure Modes: An unreadable or corrupt file starts an empty log.
        If Removed: Each HTTP turn would start a conversation from scratch.
        Testing Notes: Reopen the same path and compare list_sessions().
        """
        # Summaries and messages live side by side under the session id.
        self._path = path
        self._max_sessions = max_sessions if max_sessions and max_sessions > 0 else None
        self._messages: Dict[str, List[StoredMessage]] = {}
        self._summaries: Dict[str, SessionSummary] = {}
        self._lock = threading.Lock()
        if self._restore() and self._evict():
            self._flush()

    def add_message(
        self,
        session_id: str,
        agent_id: str,
        role: str,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StoredMessage:
        """Purpose: Record one message and bump the session's last activity.
        Inputs/Outputs: Inputs are the session and agent ids, role, text and optional
            meta; output is the stored message.
        Side Effects / State: Creates the session on first use (titled from its first
            line), evicts the stalest sessions over the cap, rewrites the file.
        Dependencies: Uses _evict and _flush.
        Failure Modes: File write errors propagate.
        If Removed: Follow-up turns lose their history.
        Testing Notes: The first user message becomes the session title.
        """
        # Append under the lock so concurrent turns never interleave a flush.
        message = StoredMessage(role=role, content=content, timestamp=time.time(), meta=meta)
        with self._lock:
            summary = self._summaries.get(session_id)
            if summary is None:
                self._summaries[session_id] = SessionSummary(
                    session_id=session_id,
                    agent_id=agent_id,
                    title=_title_from(content),
                    updated_at=message.timestamp,
                )
            else:
                summary.updated_at = message.timestamp
            self._messages.setdefault(session_id, []).append(message)
            self._evict()
            self._flush()
        return message

    def history(self, session_id: str, limit: int) -> List[ChatMessage]:
        # Only plain user/assistant turns are replayed to the model.
        if limit <= 0:
            return []
        with self._lock:
            stored = list(self._messages.get(session_id, ()))[-limit:]
        return [
            ChatMessage(role=message.role, content=message.content)
            for message in stored
            if message.role in _REPLAYABLE_ROLES and message.content
        ]

    def list_sessions(self, agent_id: Optional[str] = None) -> List[SessionSummary]:
        with self._lock:
            summaries = [
                summary
                for summary in self._summaries.values()
                if agent_id is None or summary.agent_id == agent_id
            ]
        summaries.sort(key=lambda summary: summary.updated_at, reverse=True)
        return summaries

    def get_messages(self, session_id: str) -> List[StoredMessage]:
        with self._lock:
            return list(self._messages.get(session_id, ()))

    def _restore(self) -> bool:
        if self._path is None or not self._path.is_file():
            return False
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        for session_id, entry in (data.get("sessions") or {}).items():
            self._summaries[session_id] = SessionSummary(**entry["summary"])
            self._messages[session_id] = [StoredMessage(**raw) for raw in entry.get("messages", [])]
        return True

    def _evict(self) -> bool:
        # Keep the most recently active sessions only.
        if self._max_sessions is None or len(self._summaries) <= self._max_sessions:
            return False
        keep = {
            summary.session_id
            for summary in heapq.nlargest(
                self._max_sessions,
                self._summaries.values(),
                key=lambda summary: summary.updated_at,
            )
        }
        for session_id in [sid for sid in self._summaries if sid not in keep]:
            del self._summaries[session_id]
            self._messages.pop(session_id, None)
        return True

    def _flush(self) -> None:
        # Readers of the file never see a half-written document.
        if self._path is None:
            return
        document = {
            "sessions": {
                session_id: {
                    "summary": summary.model_dump(),
                    "messages": [message.model_dump() for message in self._messages.get(session_id, [])],
                }
                for session_id, summary in self._summaries.items()
            }
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        staging = self._path.with_name(self._path.name + ".tmp")
        staging.write_text(json.dumps(document, ensure_ascii=False, indent=2), encoding="utf-8")
        staging.replace(self._path)


def _title_from(content: str) -> str:
    lines = content.strip().splitlines()
    return (lines[0][:48].strip() if lines else "") or _UNTITLED
