"""Memory module: qmd-backed turn recall, reranking, and turn persistence."""

from src.memory.backend import BackendState, CommandResult, QmdBackend, run_command
from src.memory.composer import format_memory_prompt
from src.memory.contracts import (
    MemoryConfig,
    QueryResult,
    RawHit,
    RetrievalMode,
    TurnRecord,
    TurnSections,
)
from src.memory.engine import MemoryContext, MemoryEngine
from src.memory.indexer import AgentIndexState, CollectionManager
from src.memory.queries import build_lexical_variants
from src.memory.ranker import ResultRanker, parse_qmd_results, parse_turn_sections
from src.memory.searcher import RetrievalStrategist
from src.memory.writer import TurnWriter

__all__ = [
    "AgentIndexState",
    "BackendState",
    "CollectionManager",
    "CommandResult",
    "MemoryConfig",
    "MemoryContext",
    "MemoryEngine",
    "QmdBackend",
    "QueryResult",
    "RawHit",
    "ResultRanker",
    "RetrievalMode",
    "RetrievalStrategist",
    "TurnRecord",
    "TurnSections",
    "TurnWriter",
    "build_lexical_variants",
    "format_memory_prompt",
    "parse_qmd_results",
    "parse_turn_sections",
    "run_command",
]
