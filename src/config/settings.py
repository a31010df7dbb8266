from __future__ import annotations

import math
from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.constants import DEFAULT_MEMORY_CHANNELS

# Load .env once at module import so every BaseSettings subclass sees the values
load_dotenv()


def _clamp_int(v: int, *, floor: int) -> int:
    return max(floor, v)


def _clamp_float(v: float, *, floor: float, default: float) -> float:
    if not math.isfinite(v):
        return default
    return max(floor, v)


class QmdSettings(BaseSettings):
    """qmd retrieval settings. Env vars prefixed with MEMORY_QMD_.

    Numeric fields are clamped to their floors instead of rejected, so a
    bad value degrades retrieval rather than refusing to start.
    """

    model_config = SettingsConfigDict(env_prefix="MEMORY_QMD_")

    enabled: bool = True
    command: str = ""  # empty = auto-detect (~/.bun/bin/qmd, then PATH)
    top_k: int = 4
    min_score: float = 0.0
    max_chars: int = 2500  # summed snippet block lengths; preamble not charged
    update_interval_seconds: int = 120
    use_semantic_search: bool = False
    disable_query_expansion: bool = True
    allow_unsafe_vsearch: bool = False
    quick_precheck_enabled: bool = True
    precheck_timeout_s: float = 0.8
    search_timeout_s: float = 3.0
    vector_search_timeout_s: float = 10.0
    debug_logging: bool = False
    channels: str = DEFAULT_MEMORY_CHANNELS  # comma-separated channel ids

    @field_validator("command")
    @classmethod
    def _strip_command(cls, v: str) -> str:
        return v.strip()

    @field_validator("top_k")
    @classmethod
    def _clamp_top_k(cls, v: int) -> int:
        return _clamp_int(v, floor=1)

    @field_validator("min_score")
    @classmethod
    def _finite_min_score(cls, v: float) -> float:
        return v if math.isfinite(v) else 0.0

    @field_validator("max_chars")
    @classmethod
    def _clamp_max_chars(cls, v: int) -> int:
        return _clamp_int(v, floor=500)

    @field_validator("update_interval_seconds")
    @classmethod
    def _clamp_update_interval(cls, v: int) -> int:
        return _clamp_int(v, floor=10)

    @field_validator("precheck_timeout_s")
    @classmethod
    def _clamp_precheck_timeout(cls, v: float) -> float:
        return _clamp_float(v, floor=0.1, default=0.8)

    @field_validator("search_timeout_s")
    @classmethod
    def _clamp_search_timeout(cls, v: float) -> float:
        return _clamp_float(v, floor=0.5, default=3.0)

    @field_validator("vector_search_timeout_s")
    @classmethod
    def _clamp_vector_timeout(cls, v: float) -> float:
        return _clamp_float(v, floor=1.0, default=10.0)

    @model_validator(mode="after")
    def _vector_slower_than_lexical(self) -> Self:
        # vsearch embeds the query before searching; it must get more time than BM25.
        if self.vector_search_timeout_s <= self.search_timeout_s:
            self.vector_search_timeout_s = self.search_timeout_s * 2
        return self

    @property
    def channel_set(self) -> frozenset[str]:
        return frozenset(c.strip() for c in self.channels.split(",") if c.strip())


class MemorySettings(BaseSettings):
    """Memory retrieval and turn persistence settings. Env vars prefixed with MEMORY_."""

    model_config = SettingsConfigDict(env_prefix="MEMORY_")

    enabled: bool = False
    root_path: Path = Path.home() / ".tinyclaw" / "memory"
    turn_text_max_chars: int = 16_000  # per user / assistant section
    qmd: QmdSettings = Field(default_factory=QmdSettings)

    @field_validator("turn_text_max_chars")
    @classmethod
    def _clamp_turn_text(cls, v: int) -> int:
        return _clamp_int(v, floor=1)

    @property
    def turns_path(self) -> Path:
        return self.root_path / "turns"


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    memory: MemorySettings = Field(default_factory=MemorySettings)
    log_level: str = "INFO"
    log_json: bool = True


def get_settings() -> Settings:
    """Load and validate settings from environment and .env."""
    return Settings()
