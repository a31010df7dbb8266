"""Shared constants for the memory engine."""

from __future__ import annotations

from pathlib import Path

QMD_COMMAND = "qmd"
# Global bun install; the only layout whose store.ts can be patched for no-expansion vsearch.
QMD_BUN_BINARY = Path.home() / ".bun" / "bin" / "qmd"
QMD_BUN_STORE_TS = (
    Path.home() / ".bun" / "install" / "global" / "node_modules" / "qmd" / "src" / "store.ts"
)
QMD_DISABLE_EXPANSION_ENV = "QMD_VSEARCH_DISABLE_EXPANSION"

COLLECTION_PREFIX = "tinyclaw"
TURN_FILE_MASK = "**/*.md"
DEFAULT_MEMORY_CHANNELS = "telegram,discord,whatsapp"
