"""Turn writer: persist each completed exchange as a markdown turn file.

Responsibilities:
- One file per turn under turns/<agent>/, named <timestamp>-<message id>.md
  so lexical order is chronological order
- Fixed layout with `## User` / `## Assistant` sections (parsed back by ranker)
- Cap each text section independently with a [truncated] marker
- UTF-8 writes (CJK compatible)
- persist_turn() never raises: a lost turn must not fail the conversation
"""

from __future__ import annotations

import re
from datetime import UTC, datetime
from pathlib import Path

import structlog

from src.infra.errors import MemoryWriteError
from src.memory.contracts import TurnRecord
from src.memory.indexer import agent_turns_dir

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n\n[truncated]"

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9_-]")


def iso_utc(ts: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a Z suffix."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    ts = ts.astimezone(UTC)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def turn_filename(ts: datetime, message_id: str) -> str:
    safe_id = _UNSAFE_FILENAME_RE.sub("-", message_id) or "turn"
    stamp = iso_utc(ts).replace(":", "-").replace(".", "-")
    return f"{stamp}-{safe_id}.md"


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}{TRUNCATION_MARKER}"


class TurnWriter:
    """Write turn records into the per-agent directories qmd indexes."""

    def __init__(self, turns_root: Path, *, max_text_chars: int = 16_000) -> None:
        self._turns_root = turns_root
        self._max_text_chars = max_text_chars

    def render(self, record: TurnRecord) -> str:
        """Format:
        # Turn for @{agent_id} ({agent_name})

        - Timestamp: 2026-02-22T10:00:00.000Z
        - Channel: telegram
        - Sender: alice
        - Message ID: 42

        ## User

        {user_message}

        ## Assistant

        {agent_response}
        """
        name = record.agent_name or record.agent_id
        lines = [
            f"# Turn for @{record.agent_id} ({name})",
            "",
            f"- Timestamp: {iso_utc(record.timestamp)}",
            f"- Channel: {record.channel}",
            f"- Sender: {record.sender}",
            f"- Message ID: {record.message_id}",
            "",
            "## User",
            "",
            truncate_text(record.user_message, self._max_text_chars),
            "",
            "## Assistant",
            "",
            truncate_text(record.agent_response, self._max_text_chars),
            "",
        ]
        return "\n".join(lines)

    async def write_turn(self, record: TurnRecord) -> Path:
        """Write one turn file.

        Returns: path to the written file.
        Raises: MemoryWriteError if the directory or file cannot be written.
        """
        turns_dir = agent_turns_dir(self._turns_root, record.agent_id)
        filepath = turns_dir / turn_filename(record.timestamp, record.message_id)
        content = self.render(record)
        try:
            turns_dir.mkdir(parents=True, exist_ok=True)
            filepath.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise MemoryWriteError(f"Failed to write turn {filepath.name}: {exc}") from exc

        logger.info(
            "memory_turn_written",
            agent_id=record.agent_id,
            channel=record.channel,
            path=str(filepath),
            bytes_written=len(content.encode("utf-8")),
        )
        return filepath

    async def persist_turn(self, record: TurnRecord) -> Path | None:
        """Best-effort write_turn(): failures are logged, never raised."""
        try:
            return await self.write_turn(record)
        except Exception as exc:
            logger.warning(
                "memory_turn_persist_failed",
                agent_id=record.agent_id,
                message_id=record.message_id,
                error=str(exc),
            )
            return None
