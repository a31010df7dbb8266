"""Memory engine: enrich outgoing messages with recalled turns, persist new ones.

Pipeline per enrich() call:
probe qmd -> ensure collection -> refresh on cooldown -> (precheck) ->
BM25 or vsearch -> hydrate + rerank -> compose -> message + memory block.

Both public entry points are total: any failure is logged with the stage
that caused it and the original message is returned unchanged (fail open).
All mutable caches live on a MemoryContext owned by the caller.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from src.constants import QMD_BUN_BINARY, QMD_BUN_STORE_TS
from src.memory.backend import BackendState, QmdBackend, Runner, run_command
from src.memory.composer import format_memory_prompt
from src.memory.contracts import MemoryConfig, TurnRecord
from src.memory.indexer import AgentIndexState, CollectionManager, agent_turns_dir
from src.memory.queries import build_lexical_variants
from src.memory.ranker import ResultRanker
from src.memory.searcher import RetrievalStrategist
from src.memory.writer import TurnWriter

if TYPE_CHECKING:
    from src.config.settings import Settings

logger = structlog.get_logger()

WARN_QMD_UNAVAILABLE = "qmd_unavailable"


@dataclass
class MemoryContext:
    """Process-lifetime state shared by every call on one engine.

    Tests build a fresh context (or call reset()) to isolate cases.
    """

    backend_state: BackendState = field(default_factory=BackendState)
    index_states: dict[str, AgentIndexState] = field(default_factory=dict)
    warned: set[str] = field(default_factory=set)
    clock: Callable[[], float] = time.monotonic

    def warn_once(self, kind: str, event: str, **fields: object) -> bool:
        """Log a warning the first time kind is seen on this context."""
        if kind in self.warned:
            return False
        self.warned.add(kind)
        logger.warning(event, **fields)
        return True

    def reset(self) -> None:
        self.backend_state = BackendState()
        self.index_states.clear()
        self.warned.clear()


class MemoryEngine:
    """Entry points used by the message queue worker."""

    def __init__(
        self,
        context: MemoryContext | None = None,
        *,
        runner: Runner = run_command,
        bun_binary: Path = QMD_BUN_BINARY,
        bun_store_ts: Path = QMD_BUN_STORE_TS,
    ) -> None:
        self._context = context or MemoryContext()
        self._runner = runner
        self._bun_binary = bun_binary
        self._bun_store_ts = bun_store_ts

    @property
    def context(self) -> MemoryContext:
        return self._context

    def _backend(self) -> QmdBackend:
        # Rebuilt per call so a reset() context is picked up.
        return QmdBackend(
            self._context.backend_state,
            runner=self._runner,
            bun_binary=self._bun_binary,
            bun_store_ts=self._bun_store_ts,
        )

    @staticmethod
    def _debug(config: MemoryConfig, agent_id: str, stage: str, **details: object) -> None:
        if config.debug_logging:
            logger.info("memory_debug", agent_id=agent_id, stage=stage, **details)

    async def enrich(self, agent_id: str, message: str, settings: Settings, channel: str) -> str:
        """Return message with a recalled-memory block appended, or message unchanged."""
        stage = "config"
        try:
            config = MemoryConfig.from_settings(settings)
            if not config.enabled or channel not in config.channels:
                return message

            stage = "probe"
            backend = self._backend()
            if not await backend.probe(config.command):
                self._context.warn_once(
                    WARN_QMD_UNAVAILABLE,
                    "qmd_unavailable",
                    detail="qmd not found, memory retrieval disabled",
                )
                logger.info("memory_source", agent_id=agent_id, source="none", reason="qmd unavailable")
                return message
            self._debug(config, agent_id, "qmd", command=backend.command)

            stage = "collection"
            collections = CollectionManager(
                backend,
                config.turns_root,
                self._context.index_states,
                clock=self._context.clock,
            )
            collection = await collections.ensure(agent_id)
            self._debug(config, agent_id, "collection", name=collection)

            stage = "update"
            await collections.maybe_refresh(collection, config.update_interval_s)
            self._debug(config, agent_id, "update", interval_s=config.update_interval_s)

            strategist = RetrievalStrategist(backend, self._context.warn_once)
            if config.quick_precheck_enabled:
                stage = "precheck"
                self._debug(
                    config, agent_id, "precheck",
                    timeout_s=config.precheck_timeout_s,
                    min_score=config.min_score,
                    variants=len(build_lexical_variants(message)),
                )
                try:
                    has_hit = await strategist.has_quick_hit(message, collection, config)
                except Exception as exc:
                    logger.warning("memory_precheck_skipped", agent_id=agent_id, error=str(exc))
                    logger.info(
                        "memory_source", agent_id=agent_id, source="none", reason="qmd precheck error"
                    )
                    return message
                if not has_hit:
                    logger.info(
                        "memory_source", agent_id=agent_id, source="none", reason="qmd precheck no-hit"
                    )
                    return message

            stage = "query"
            mode = strategist.resolve_mode(config)
            self._debug(
                config, agent_id, "query",
                mode=mode.label,
                timeout_s=(
                    config.vector_search_timeout_s if mode.use_vsearch else config.search_timeout_s
                ),
                top_k=config.top_k,
                min_score=config.min_score,
                disable_expansion=config.disable_query_expansion,
            )
            mode, result = await strategist.query(message, collection, config, mode=mode)
            self._debug(config, agent_id, "query-used", mode=mode.label, query=result.query)
            if not result.results:
                logger.info(
                    "memory_source", agent_id=agent_id, source="none", reason=f"{mode.label} no-hit"
                )
                return message

            stage = "rank"
            ranker = ResultRanker(
                agent_turns_dir(config.turns_root, agent_id),
                max_hydrations=config.top_k,
            )
            ranked = ranker.rerank(result.results, message)

            stage = "compose"
            memory_block = format_memory_prompt(ranked, config.max_chars)
            if not memory_block:
                logger.info(
                    "memory_source",
                    agent_id=agent_id,
                    source="none",
                    reason=f"{mode.label} no-usable-snippet",
                )
                return message

            logger.info(
                "memory_retrieval_hit", agent_id=agent_id, snippets=len(ranked), mode=mode.label
            )
            logger.info("memory_source", agent_id=agent_id, source=mode.label)
            return f"{message}{memory_block}"
        except Exception as exc:
            logger.warning("memory_retrieval_skipped", agent_id=agent_id, stage=stage, error=str(exc))
            logger.info("memory_source", agent_id=agent_id, source="none", reason="qmd error")
            return message

    async def persist_turn(
        self,
        settings: Settings,
        *,
        agent_id: str,
        channel: str,
        sender: str,
        message_id: str,
        user_message: str,
        agent_response: str,
        agent_name: str = "",
        timestamp: datetime | None = None,
    ) -> Path | None:
        """Write the turn file that future enrich() calls can recall. Never raises."""
        try:
            if not settings.memory.enabled:
                return None
            writer = TurnWriter(
                settings.memory.turns_path,
                max_text_chars=settings.memory.turn_text_max_chars,
            )
            record = TurnRecord(
                agent_id=agent_id,
                agent_name=agent_name,
                channel=channel,
                sender=sender,
                message_id=message_id,
                user_message=user_message,
                agent_response=agent_response,
                timestamp=timestamp or datetime.now(UTC),
            )
            return await writer.persist_turn(record)
        except Exception as exc:
            logger.warning("memory_turn_persist_failed", agent_id=agent_id, error=str(exc))
            return None
