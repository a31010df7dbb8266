"""Lexical query variants for BM25 recall.

qmd's keyword index misses on question phrasing ("what is X?" vs a turn that
just says "X is ..."), so a message is searched as a short list of
progressively more generic rewrites. The unmodified message always comes first.
"""

from __future__ import annotations

import re

_PUNCT_RE = re.compile(r"[?？!！,，.。;；:：]")
_ZH_QUESTION_RE = re.compile(r"是什么|是啥|什么|多少|几点|哪里|哪儿|哪个|哪位|谁|吗|呢|来着")
_EN_QUESTION_RE = re.compile(r"\b(?:what|which|who|where|when|why|how)\b", re.IGNORECASE)
_WS_RE = re.compile(r"\s+")


def _normalize(value: str) -> str:
    return _WS_RE.sub(" ", value).strip()


def build_lexical_variants(message: str) -> list[str]:
    """Return deduplicated, non-empty query variants, most specific first.

    Order: trimmed raw message, punctuation stripped, Chinese question
    particles removed, English question words removed, hyphens split.
    """
    variants: list[str] = []

    def push(cleaned: str) -> None:
        if cleaned and cleaned not in variants:
            variants.append(cleaned)

    push(message.strip())

    no_punct = _PUNCT_RE.sub(" ", message)
    push(_normalize(no_punct))
    push(_normalize(_ZH_QUESTION_RE.sub(" ", no_punct)))
    push(_normalize(_EN_QUESTION_RE.sub(" ", no_punct)))
    # Code-style tokens like ABC-123 index as separate words.
    push(_normalize(no_punct.replace("-", " ")))

    return variants
