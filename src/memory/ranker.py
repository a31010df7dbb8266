"""Parse qmd JSON output and re-rank hits against their turn files.

qmd scores are only lexical/semantic similarity. Hits that point back at a
turn file are hydrated from disk and rescored with a few cheap content
heuristics: answers carrying code-like tokens or identity/preference cues go
up, "I don't know" answers go down, and overlap with the query adds a little.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from urllib.parse import unquote

import structlog

from src.memory.contracts import RawHit, TurnSections

logger = structlog.get_logger()

USER_MARKER = "\n## User\n"
ASSISTANT_MARKER = "\n## Assistant\n"

USER_DISPLAY_CHARS = 180
ASSISTANT_DISPLAY_CHARS = 260

CODE_TOKEN_BOOST = 0.5
CUE_BOOST = 0.2
LOW_CONFIDENCE_PENALTY = 0.5
TERM_OVERLAP_BOOST = 0.04

_SNIPPET_KEYS = ("snippet", "context", "text", "content")
_SOURCE_KEYS = ("path", "file", "source", "title")

_QMD_SOURCE_RE = re.compile(r"^qmd://[^/]+/(.+)$")
_QUERY_TERM_RE = re.compile(r"[a-z0-9_-]{2,}|[\u4e00-\u9fff]{1,3}")
_CODE_TOKEN_RE = re.compile(r"\b[A-Z]{3,}(?:-[A-Z0-9]+){2,}\b")
_CUE_RE = re.compile(r"代号|key|code|是|喜欢|likes?", re.IGNORECASE)
_LOW_CONFIDENCE_RE = re.compile(
    r"不知道|没有.*信息|无法|不清楚|need more context|don't have any information"
    r"|i don't have|not enough information",
    re.IGNORECASE,
)
_WS_RE = re.compile(r"\s+")


def _first_text(row: dict, keys: tuple[str, ...]) -> str:
    for key in keys:
        value = row.get(key)
        if value:
            return str(value).strip()
    return ""


def parse_qmd_results(raw: str) -> list[RawHit]:
    """Parse `qmd search|vsearch --json` output.

    Accepts a bare array or {"results": [...]}. Rows without snippet text are
    dropped; a missing score counts as 0. Malformed output yields [].
    """
    trimmed = raw.strip()
    if not trimmed:
        return []
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        logger.debug("qmd_output_not_json", preview=trimmed[:80])
        return []

    rows = parsed if isinstance(parsed, list) else (
        parsed.get("results") if isinstance(parsed, dict) else None
    )
    if not isinstance(rows, list):
        return []

    results: list[RawHit] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        score = row.get("score")
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            score = 0.0
        snippet = _first_text(row, _SNIPPET_KEYS)
        if not snippet:
            continue
        results.append(RawHit(score=float(score), snippet=snippet, source=_first_text(row, _SOURCE_KEYS)))
    return results


def parse_turn_sections(content: str) -> TurnSections:
    """Split a turn file into its user and assistant sections."""
    user_pos = content.find(USER_MARKER)
    assistant_pos = content.find(ASSISTANT_MARKER)
    if user_pos < 0 or assistant_pos < 0 or assistant_pos <= user_pos:
        return TurnSections()
    user = content[user_pos + len(USER_MARKER):assistant_pos].strip()
    assistant = content[assistant_pos + len(ASSISTANT_MARKER):].strip()
    return TurnSections(user=user, assistant=assistant)


def _normalize_inline(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _truncate_inline(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}..."


def is_low_confidence_answer(text: str) -> bool:
    return bool(_LOW_CONFIDENCE_RE.search(text))


def extract_query_terms(message: str) -> list[str]:
    return list(dict.fromkeys(_QUERY_TERM_RE.findall(message.lower())))


class ResultRanker:
    """Hydrate hits from the agent's turn files and rescore them.

    At most max_hydrations turn files are read per call; hits past that
    budget keep their qmd score and snippet.
    """

    def __init__(self, turns_dir: Path, *, max_hydrations: int) -> None:
        self._turns_dir = turns_dir
        self._max_hydrations = max_hydrations

    def load_sections(self, source: str) -> TurnSections | None:
        match = _QMD_SOURCE_RE.match(source)
        if not match:
            return None
        rel = unquote(match.group(1))
        base = self._turns_dir.resolve()
        path = (base / rel).resolve()
        if not path.is_relative_to(base) or not path.is_file():
            return None
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("turn_hydration_failed", path=str(path), error=str(exc))
            return None
        return parse_turn_sections(content)

    def rerank(self, results: list[RawHit], message: str) -> list[RawHit]:
        if not results:
            return results

        terms = extract_query_terms(message)
        budget = self._max_hydrations
        ranked: list[RawHit] = []

        for hit in results:
            sections = None
            if budget > 0 and _QMD_SOURCE_RE.match(hit.source):
                budget -= 1
                sections = self.load_sections(hit.source)

            # Sections are stripped, so a non-empty assistant survives normalization.
            if sections is None or not sections.assistant:
                ranked.append(hit)
                continue

            user = _normalize_inline(sections.user)
            assistant = _normalize_inline(sections.assistant)
            score = hit.score
            snippet = (
                f"User: {_truncate_inline(user, USER_DISPLAY_CHARS)}\n"
                f"Assistant: {_truncate_inline(assistant, ASSISTANT_DISPLAY_CHARS)}"
            )

            if _CODE_TOKEN_RE.search(assistant):
                score += CODE_TOKEN_BOOST
            if _CUE_RE.search(assistant):
                score += CUE_BOOST
            if is_low_confidence_answer(assistant):
                score -= LOW_CONFIDENCE_PENALTY

            hay = f"{user} {assistant}".lower()
            score += TERM_OVERLAP_BOOST * sum(1 for t in terms if t in hay)

            ranked.append(RawHit(score=score, snippet=snippet, source=hit.source))

        # sorted() is stable, so equal scores keep qmd's order.
        return sorted(ranked, key=lambda r: r.score, reverse=True)
