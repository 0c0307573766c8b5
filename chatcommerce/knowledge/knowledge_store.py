"""Per-agent markdown knowledge store with heading chunks and keyword scoring."""

from __future__ import annotations

import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

from ..utils import tokenize

logger = logging.getLogger("chatcommerce.knowledge")

MAX_QUERY_CHARS = 500
MIN_QUERY_CHARS = 3
MAX_CHUNK_WORDS = 400
TITLE_WEIGHT = 2.0
SECTION_WEIGHT = 1.0

_AGENT_ID = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")
_HEADING = re.compile(r"^(#{2,3})\s+(.*)$")


class KnowledgeRetriever(Protocol):
    def search(self, agent_id: str, query: str, topk: int = 3) -> List[str]:
        ...


@dataclass(frozen=True)
class KnowledgeChunk:
    source: str
    section: str
    title: str
    content: str

    def render(self) -> str:
        header = " / ".join(dict.fromkeys(part for part in (self.section, self.title) if part))
        return f"{header}\n{self.content}" if header else self.content


class KnowledgeStore:
    """Markdown files under knowledge_dir/<agent_id>/ searched by keyword overlap."""

    def __init__(self, knowledge_dir: Path) -> None:
        self._knowledge_dir = knowledge_dir
        self._chunks: Dict[str, Tuple[Tuple[Tuple[str, float], ...], List[KnowledgeChunk]]] = {}
        self._lock = threading.Lock()

    def search(self, agent_id: str, query: str, topk: int = 3) -> List[str]:
        """Purpose: Return the agent's knowledge chunks that best match a customer message.
        Inputs/Outputs: Inputs are agent_id, the raw message and topk; output is rendered
            chunk texts, best first.
        Side Effects / State: Reads markdown files when their mtimes change.
        Dependencies: Uses sanitize_query, chunk_markdown and score_chunk.
        Failure Modes: Invalid agent ids, unusable queries and unreadable files give an
            empty list; nothing is raised.
        If Removed: Prompts lose merchant FAQ context (opening hours, delivery zones).
        Testing Notes: "../x" as agent id and "hi" as query both return [].
        """
        # Reject anything that could escape knowledge_dir before touching disk.
        if not isinstance(agent_id, str) or not _AGENT_ID.match(agent_id):
            logger.warning("knowledge agent=%r status=rejected reason=invalid_agent", agent_id)
            return []
        cleaned = sanitize_query(query)
        if cleaned is None or topk <= 0:
            return []
        terms = tokenize(cleaned)
        if not terms:
            return []

        try:
            chunks = self._chunks_for(agent_id)
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("knowledge agent=%s status=failed error=%s", agent_id, exc)
            return []

        ranked = sorted(
            ((score_chunk(terms, chunk), index, chunk) for index, chunk in enumerate(chunks)),
            key=lambda entry: (-entry[0], entry[1]),
        )
        hits = [chunk.render() for score, _, chunk in ranked[:topk] if score > 0]
        logger.debug("knowledge agent=%s chunks=%s hits=%s", agent_id, len(chunks), len(hits))
        return hits

    def _chunks_for(self, agent_id: str) -> List[KnowledgeChunk]:
        folder = self._knowledge_dir / agent_id
        if not folder.is_dir():
            return []
        files = sorted(folder.glob("*.md"))
        fingerprint = tuple((path.name, path.stat().st_mtime) for path in files)
        with self._lock:
            cached = self._chunks.get(agent_id)
        if cached is not None and cached[0] == fingerprint:
            return cached[1]
        chunks: List[KnowledgeChunk] = []
        for path in files:
            chunks.extend(chunk_markdown(path.read_text(encoding="utf-8"), source=path.stem))
        with self._lock:
            self._chunks[agent_id] = (fingerprint, chunks)
        return chunks


def chunk_markdown(md_text: str, source: str) -> List[KnowledgeChunk]:
    """Purpose: Cut a markdown document into chunks at ## and ### headings.
    Inputs/Outputs: Inputs are the document text and a source label; output is chunks
        carrying their section (##) and title (### or the section).
    Side Effects / State: None.
    Dependencies: Uses _HEADING and _windows.
    Failure Modes: Empty text gives no chunks; text before the first heading keeps
        empty section and title.
    If Removed: Retrieval could only return whole files.
    Testing Notes: Sections longer than MAX_CHUNK_WORDS are split into several chunks.
    """
    # Accumulate body lines until the next heading closes the current chunk.
    chunks: List[KnowledgeChunk] = []
    section = title = ""
    body: List[str] = []

    def close() -> None:
        text = "\n".join(body).strip()
        body.clear()
        for piece in _windows(text):
            chunks.append(KnowledgeChunk(source=source, section=section, title=title or section, content=piece))

    for line in (md_text or "").splitlines():
        heading = _HEADING.match(line)
        if heading is None:
            body.append(line)
            continue
        close()
        if len(heading.group(1)) == 2:
            section = title = heading.group(2).strip()
        else:
            title = heading.group(2).strip()
    close()
    return chunks


def score_chunk(terms: List[str], chunk: KnowledgeChunk) -> float:
    counts = Counter(tokenize(chunk.content))
    if not counts:
        return 0.0
    title_terms = set(tokenize(chunk.title))
    section_terms = set(tokenize(chunk.section))
    return sum(
        counts[term]
        + (TITLE_WEIGHT if term in title_terms else 0.0)
        + (SECTION_WEIGHT if term in section_terms else 0.0)
        for term in terms
    )


def sanitize_query(query: object) -> Optional[str]:
    # Collapse whitespace, cap length, drop queries too short to score.
    if not isinstance(query, str):
        return None
    cleaned = " ".join(query.split())[:MAX_QUERY_CHARS]
    return cleaned if len(cleaned) >= MIN_QUERY_CHARS else None


def _windows(text: str) -> List[str]:
    if not text:
        return []
    words = text.split()
    if len(words) <= MAX_CHUNK_WORDS:
        return [text]
    return [" ".join(words[start : start + MAX_CHUNK_WORDS]) for start in range(0, len(words), MAX_CHUNK_WORDS)]
