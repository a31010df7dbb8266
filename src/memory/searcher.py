"""Memory searcher: choose BM25 or vector search against a qmd collection.

Vector search (`qmd vsearch`) expands the query with a local model by
default, and that expansion can pull multi-GB model downloads on first use.
vsearch is therefore only used when it was asked for AND either the operator
explicitly allowed it unsafely, or expansion is disabled in config and the
installed qmd is known to honor the disable switch. Otherwise BM25 is used
and the reason is logged once.
"""

from __future__ import annotations

from collections.abc import Callable

from src.constants import QMD_DISABLE_EXPANSION_ENV
from src.memory.backend import QmdBackend
from src.memory.contracts import MemoryConfig, QueryResult, RetrievalMode
from src.memory.queries import build_lexical_variants
from src.memory.ranker import parse_qmd_results

WARN_EXPANSION_ENABLED = "vsearch_unsafe:query_expansion_enabled"
WARN_SUPPRESSION_UNSUPPORTED = "vsearch_unsafe:expansion_suppression_unsupported"

# (kind, event, **fields) -> True when the warning was emitted by this call.
WarnOnce = Callable[..., bool]


def search_args(
    subcommand: str,
    query: str,
    collection: str,
    *,
    limit: int,
    min_score: float,
) -> list[str]:
    return [
        subcommand, query, "--json",
        "-c", collection,
        "-n", str(limit),
        "--min-score", str(min_score),
    ]


class RetrievalStrategist:
    """Run the precheck and the primary query for one collection."""

    def __init__(self, backend: QmdBackend, warn_once: WarnOnce) -> None:
        self._backend = backend
        self._warn_once = warn_once

    def resolve_mode(self, config: MemoryConfig) -> RetrievalMode:
        """Safety-first mode selection; see module docstring."""
        if not config.use_semantic_search:
            return RetrievalMode(use_vsearch=False)
        if config.allow_unsafe_vsearch:
            return RetrievalMode(use_vsearch=True)

        if not config.disable_query_expansion:
            self._warn_once(
                WARN_EXPANSION_ENABLED,
                "vsearch_unsafe_fallback",
                reason="query_expansion_enabled",
                hint="set MEMORY_QMD_ALLOW_UNSAFE_VSEARCH=true to override",
            )
            return RetrievalMode(use_vsearch=False)

        if not self._backend.expansion_supported():
            self._warn_once(
                WARN_SUPPRESSION_UNSUPPORTED,
                "vsearch_unsafe_fallback",
                reason="expansion_suppression_unsupported",
                hint=(
                    "run scripts/patch_qmd_no_expansion.py or set "
                    "MEMORY_QMD_ALLOW_UNSAFE_VSEARCH=true"
                ),
            )
            return RetrievalMode(use_vsearch=False)

        return RetrievalMode(use_vsearch=True)

    def vsearch_env(self, config: MemoryConfig) -> dict[str, str] | None:
        if config.disable_query_expansion and self._backend.expansion_supported():
            return {QMD_DISABLE_EXPANSION_ENV: "1"}
        return None

    async def has_quick_hit(self, message: str, collection: str, config: MemoryConfig) -> bool:
        """Cheap gate: does any lexical variant have at least one hit?

        Backend errors propagate; the caller treats them as "no memory".
        """
        for query in build_lexical_variants(message):
            stdout = await self._backend.run(
                search_args("search", query, collection, limit=1, min_score=config.min_score),
                timeout_s=config.precheck_timeout_s,
            )
            if parse_qmd_results(stdout):
                return True
        return False

    async def run_bm25_with_variants(
        self, message: str, collection: str, config: MemoryConfig
    ) -> QueryResult:
        """Try lexical variants in order; the first with any hit wins."""
        last_query = message
        for query in build_lexical_variants(message):
            last_query = query
            stdout = await self._backend.run(
                search_args(
                    "search", query, collection,
                    limit=config.top_k, min_score=config.min_score,
                ),
                timeout_s=config.search_timeout_s,
            )
            results = parse_qmd_results(stdout)
            if results:
                return QueryResult(results=results, query=query)
        return QueryResult(results=[], query=last_query)

    async def run_vsearch(self, message: str, collection: str, config: MemoryConfig) -> QueryResult:
        stdout = await self._backend.run(
            search_args(
                "vsearch", message, collection,
                limit=config.top_k, min_score=config.min_score,
            ),
            timeout_s=config.vector_search_timeout_s,
            env=self.vsearch_env(config),
        )
        return QueryResult(results=parse_qmd_results(stdout), query=message)

    async def query(
        self,
        message: str,
        collection: str,
        config: MemoryConfig,
        *,
        mode: RetrievalMode | None = None,
    ) -> tuple[RetrievalMode, QueryResult]:
        mode = mode or self.resolve_mode(config)
        if mode.use_vsearch:
            return mode, await self.run_vsearch(message, collection, config)
        return mode, await self.run_bm25_with_variants(message, collection, config)
