"""Tests for TurnWriter: layout, naming, truncation, best-effort persistence."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from src.infra.errors import MemoryWriteError
from src.memory.contracts import TurnRecord
from src.memory.ranker import parse_turn_sections
from src.memory.writer import TurnWriter, iso_utc, truncate_text, turn_filename

TS = datetime(2026, 2, 22, 10, 5, 7, 123456, tzinfo=UTC)


def _make_record(**overrides) -> TurnRecord:
    defaults = {
        "agent_id": "Main",
        "agent_name": "Main Agent",
        "channel": "telegram",
        "sender": "alice",
        "message_id": "42",
        "user_message": "What is my code name?",
        "agent_response": "Your code name is ABC-123-XYZ.",
        "timestamp": TS,
    }
    defaults.update(overrides)
    return TurnRecord(**defaults)


class TestNaming:
    def test_iso_utc(self) -> None:
        assert iso_utc(TS) == "2026-02-22T10:05:07.123Z"

    def test_iso_utc_converts_offset(self) -> None:
        ts = datetime(2026, 2, 22, 18, 5, 7, tzinfo=timezone(timedelta(hours=8)))
        assert iso_utc(ts) == "2026-02-22T10:05:07.000Z"

    def test_iso_utc_naive_treated_as_utc(self) -> None:
        assert iso_utc(datetime(2026, 2, 22, 10, 5, 7)) == "2026-02-22T10:05:07.000Z"

    def test_turn_filename(self) -> None:
        assert turn_filename(TS, "42") == "2026-02-22T10-05-07-123Z-42.md"

    def test_turn_filename_sanitizes_message_id(self) -> None:
        assert turn_filename(TS, "../x y") == "2026-02-22T10-05-07-123Z----x-y.md"
        assert turn_filename(TS, "") == "2026-02-22T10-05-07-123Z-turn.md"

    def test_filenames_sort_chronologically(self) -> None:
        later = TS + timedelta(milliseconds=5)
        assert turn_filename(TS, "9") < turn_filename(later, "1")


class TestTruncate:
    def test_short_unchanged(self) -> None:
        assert truncate_text("abc", 3) == "abc"

    def test_long_marked(self) -> None:
        assert truncate_text("abcdef", 3) == "abc\n\n[truncated]"


class TestWriteTurn:
    @pytest.mark.asyncio
    async def test_layout(self, tmp_path: Path) -> None:
        writer = TurnWriter(tmp_path)

        path = await writer.write_turn(_make_record())

        assert path == tmp_path / "main" / "2026-02-22T10-05-07-123Z-42.md"
        content = path.read_text(encoding="utf-8")
        assert content.startswith("# Turn for @Main (Main Agent)\n\n")
        assert "- Timestamp: 2026-02-22T10:05:07.123Z\n" in content
        assert "- Channel: telegram\n" in content
        assert "- Sender: alice\n" in content
        assert "- Message ID: 42\n" in content
        assert "\n## User\n\nWhat is my code name?\n" in content
        assert "\n## Assistant\n\nYour code name is ABC-123-XYZ.\n" in content

    @pytest.mark.asyncio
    async def test_round_trips_through_section_parser(self, tmp_path: Path) -> None:
        writer = TurnWriter(tmp_path)
        record = _make_record(user_message="第一行\n第二行", agent_response="好的\n\n- item")

        path = await writer.write_turn(record)
        sections = parse_turn_sections(path.read_text(encoding="utf-8"))

        assert sections.user == "第一行\n第二行"
        assert sections.assistant == "好的\n\n- item"

    @pytest.mark.asyncio
    async def test_sections_capped_independently(self, tmp_path: Path) -> None:
        writer = TurnWriter(tmp_path, max_text_chars=10)

        path = await writer.write_turn(_make_record(user_message="u" * 50, agent_response="short"))
        sections = parse_turn_sections(path.read_text(encoding="utf-8"))

        assert sections.user == "u" * 10 + "\n\n[truncated]"
        assert sections.assistant == "short"

    @pytest.mark.asyncio
    async def test_agent_name_defaults_to_id(self, tmp_path: Path) -> None:
        path = await TurnWriter(tmp_path).write_turn(_make_record(agent_name=""))
        assert path.read_text(encoding="utf-8").startswith("# Turn for @Main (Main)")

    @pytest.mark.asyncio
    async def test_write_error_raises(self, tmp_path: Path) -> None:
        blocker = tmp_path / "turns"
        blocker.write_text("not a directory", encoding="utf-8")
        writer = TurnWriter(blocker)

        with pytest.raises(MemoryWriteError, match="Failed to write turn"):
            await writer.write_turn(_make_record())


class TestPersistTurn:
    @pytest.mark.asyncio
    async def test_returns_path(self, tmp_path: Path) -> None:
        path = await TurnWriter(tmp_path).persist_turn(_make_record())
        assert path is not None and path.is_file()

    @pytest.mark.asyncio
    async def test_failure_swallowed(self, tmp_path: Path) -> None:
        blocker = tmp_path / "turns"
        blocker.write_text("not a directory", encoding="utf-8")

        assert await TurnWriter(blocker).persist_turn(_make_record()) is None
