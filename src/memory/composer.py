"""Format ranked memory hits into the block appended to the outgoing message."""

from __future__ import annotations

import structlog

from src.memory.contracts import RawHit

logger = structlog.get_logger()

MEMORY_PREAMBLE = "\n".join(
    [
        "",
        "---",
        "Retrieved memory snippets (from past conversations):",
        "Use only if relevant. Prioritize current user instructions over old memory.",
        "",
        "",
    ]
)
BLOCK_SEPARATOR = "\n\n"


def format_snippet_block(index: int, hit: RawHit) -> str:
    return "\n".join(
        [
            f"Snippet {index} (score={hit.score:.3f}):",
            f"Source: {hit.source}" if hit.source else "Source: unknown",
            hit.snippet,
        ]
    )


def format_memory_prompt(results: list[RawHit], max_chars: int) -> str:
    """Pack snippets in rank order into at most max_chars characters.

    The budget counts snippet block lengths only; the preamble and the
    separators between blocks are not charged. Packing stops at the first
    block that does not fit; if not even the top block fits, the result is "".

    Format:
    ---
    Retrieved memory snippets (from past conversations):
    Use only if relevant. Prioritize current user instructions over old memory.

    Snippet 1 (score=0.812):
    Source: qmd://tinyclaw-main/2026-02-22T10-00-00-000Z-42.md
    User: ...
    Assistant: ...
    """
    if not results:
        return ""

    blocks: list[str] = []
    used = 0
    for i, hit in enumerate(results, start=1):
        block = format_snippet_block(i, hit)
        if used + len(block) > max_chars:
            break
        blocks.append(block)
        used += len(block)

    if not blocks:
        logger.debug("memory_prompt_no_block_fits", max_chars=max_chars, candidates=len(results))
        return ""

    return MEMORY_PREAMBLE + BLOCK_SEPARATOR.join(blocks)
