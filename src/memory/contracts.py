"""Memory-side shared contract types.

Memory layer owns these DTOs. Callers hand in a Settings object once per
call; everything downstream works off the resolved MemoryConfig.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from src.config.settings import Settings

ModeLabel = Literal["qmd-bm25", "qmd-vsearch"]


@dataclass(frozen=True)
class MemoryConfig:
    """Resolved retrieval configuration for one enrichment call.

    Built from Settings via from_settings(); floors are already enforced by
    the settings validators, so every numeric field is positive here.
    """

    enabled: bool
    root_path: Path
    command: str | None = None
    top_k: int = 4
    min_score: float = 0.0
    max_chars: int = 2500
    update_interval_s: int = 120
    use_semantic_search: bool = False
    disable_query_expansion: bool = True
    allow_unsafe_vsearch: bool = False
    quick_precheck_enabled: bool = True
    precheck_timeout_s: float = 0.8
    search_timeout_s: float = 3.0
    vector_search_timeout_s: float = 10.0
    debug_logging: bool = False
    turn_text_max_chars: int = 16_000
    channels: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: Settings) -> MemoryConfig:
        memory = settings.memory
        qmd = memory.qmd
        return cls(
            enabled=memory.enabled and qmd.enabled,
            root_path=memory.root_path,
            command=qmd.command or None,
            top_k=qmd.top_k,
            min_score=qmd.min_score,
            max_chars=qmd.max_chars,
            update_interval_s=qmd.update_interval_seconds,
            use_semantic_search=qmd.use_semantic_search,
            disable_query_expansion=qmd.disable_query_expansion,
            allow_unsafe_vsearch=qmd.allow_unsafe_vsearch,
            quick_precheck_enabled=qmd.quick_precheck_enabled,
            precheck_timeout_s=qmd.precheck_timeout_s,
            search_timeout_s=qmd.search_timeout_s,
            vector_search_timeout_s=qmd.vector_search_timeout_s,
            debug_logging=qmd.debug_logging,
            turn_text_max_chars=memory.turn_text_max_chars,
            channels=qmd.channel_set,
        )

    @property
    def turns_root(self) -> Path:
        return self.root_path / "turns"


@dataclass(frozen=True)
class RawHit:
    """One search hit. Ranked hits reuse the shape with adjusted score/snippet."""

    score: float
    snippet: str
    source: str = ""


@dataclass(frozen=True)
class QueryResult:
    results: list[RawHit]
    query: str


@dataclass(frozen=True)
class RetrievalMode:
    use_vsearch: bool

    @property
    def label(self) -> ModeLabel:
        return "qmd-vsearch" if self.use_vsearch else "qmd-bm25"


@dataclass(frozen=True)
class TurnSections:
    user: str = ""
    assistant: str = ""


@dataclass(frozen=True)
class TurnRecord:
    """One completed exchange, as persisted under the agent's turns dir."""

    agent_id: str
    channel: str
    sender: str
    message_id: str
    user_message: str
    agent_response: str
    timestamp: datetime
    agent_name: str = ""
