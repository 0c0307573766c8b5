from __future__ import annotations

import logging
import re
import threading
from pathlib import Path
from typing import Dict, Optional, Tuple

from .catalog import Catalog, CatalogLoader
from .pipeline import AgentProfile

logger = logging.getLogger("chatcommerce.agents")

_AGENT_ID = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


class AgentDirectory:
    """Agent profiles and catalogs read from catalog_dir/<agent_id>.json."""

    def __init__(self, catalog_dir: Path) -> None:
        self._catalog_dir = catalog_dir
        self._cache: Dict[str, Tuple[float, AgentProfile, Catalog]] = {}
        self._lock = threading.Lock()

    def get(self, agent_id: str) -> Optional[Tuple[AgentProfile, Catalog]]:
        """Purpose: Return the agent profile and catalog snapshot for an agent id.
        Inputs/Outputs: Input is agent_id; output is (AgentProfile, Catalog) or None.
        Side Effects / State: Reads and caches the catalog file until its mtime changes.
        Dependencies: Uses CatalogLoader and AgentProfile.from_raw.
        Failure Modes: Unsafe ids and missing files return None; malformed JSON raises.
        If Removed: The HTTP surface cannot build a TurnInput.
        Testing Notes: Rewrite the file and verify the new catalog is picked up.
        """
        # Reject ids that could escape the catalog directory.
        if not _AGENT_ID.match(agent_id or ""):
            return None
        path = self._catalog_dir / f"{agent_id}.json"
        if not path.is_file():
            return None
        mtime = path.stat().st_mtime
        with self._lock:
            cached = self._cache.get(agent_id)
            if cached and cached[0] == mtime:
                return cached[1], cached[2]
        catalog, meta = CatalogLoader(path).load()
        profile = AgentProfile.from_raw(agent_id, meta.merchant)
        logger.info("agent=%s catalog=%s items=%s sha256=%s", agent_id, meta.file_name, len(catalog), meta.sha256[:12])
        with self._lock:
            self._cache[agent_id] = (mtime, profile, catalog)
        return profile, catalog
