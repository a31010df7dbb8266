"""Per-agent qmd collections over the agent's turn files.

Registration happens once per agent per context; re-indexing happens at most
once per configured interval. Both run under a per-collection lock so that
concurrent enrichment calls for one agent cannot double-register or
double-refresh. State is only recorded after the backend call succeeds.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.constants import COLLECTION_PREFIX, TURN_FILE_MASK
from src.infra.errors import MemoryBackendError
from src.memory.backend import QmdBackend

logger = structlog.get_logger()

REGISTER_TIMEOUT_S = 10.0
UPDATE_TIMEOUT_S = 15.0

_UNSAFE_ID_RE = re.compile(r"[^a-z0-9_-]")


def sanitize_id(raw: str) -> str:
    """Lowercase and replace anything outside [a-z0-9_-] with '-'."""
    return _UNSAFE_ID_RE.sub("-", raw.lower())


def collection_name(agent_id: str) -> str:
    return f"{COLLECTION_PREFIX}-{sanitize_id(agent_id)}"


def agent_turns_dir(turns_root: Path, agent_id: str) -> Path:
    return turns_root / sanitize_id(agent_id)


@dataclass
class AgentIndexState:
    prepared: bool = False
    last_update: float | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class CollectionManager:
    """Ensure and refresh the qmd collection behind each agent's turns dir."""

    def __init__(
        self,
        backend: QmdBackend,
        turns_root: Path,
        states: dict[str, AgentIndexState],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._turns_root = turns_root
        self._states = states
        self._clock = clock

    def _state(self, name: str) -> AgentIndexState:
        # setdefault is atomic within the event loop; no await between lookup and insert.
        return self._states.setdefault(name, AgentIndexState())

    async def ensure(self, agent_id: str) -> str:
        """Create the turns dir and register the collection; return its name.

        An "already exists" failure from qmd counts as success. Any other
        backend failure propagates and leaves the collection unregistered.
        """
        turns_dir = agent_turns_dir(self._turns_root, agent_id)
        turns_dir.mkdir(parents=True, exist_ok=True)

        name = collection_name(agent_id)
        state = self._state(name)
        if state.prepared:
            return name

        async with state.lock:
            if state.prepared:
                return name
            try:
                await self._backend.run(
                    [
                        "collection", "add", str(turns_dir),
                        "--name", name,
                        "--mask", TURN_FILE_MASK,
                    ],
                    timeout_s=REGISTER_TIMEOUT_S,
                )
            except MemoryBackendError as exc:
                msg = str(exc).lower()
                if "already" not in msg and "exists" not in msg:
                    raise
                logger.debug("qmd_collection_exists", collection=name)
            state.prepared = True
            logger.info("qmd_collection_registered", collection=name, path=str(turns_dir))
        return name

    async def maybe_refresh(self, name: str, interval_s: float) -> bool:
        """Run `qmd update` for the collection if the cooldown has elapsed.

        Returns True if an update was issued and succeeded.
        """
        state = self._state(name)
        async with state.lock:
            now = self._clock()
            if state.last_update is not None and now - state.last_update < interval_s:
                return False
            await self._backend.run(
                ["update", "--collections", name],
                timeout_s=UPDATE_TIMEOUT_S,
            )
            state.last_update = now
            return True
