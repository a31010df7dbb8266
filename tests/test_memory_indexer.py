"""Tests for CollectionManager: registration idempotency and refresh cooldown."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from src.infra.errors import BackendCommandError, BackendTimeoutError
from src.memory.backend import BackendState, QmdBackend
from src.memory.indexer import (
    AgentIndexState,
    CollectionManager,
    agent_turns_dir,
    collection_name,
    sanitize_id,
)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_manager(
    fake_qmd,
    tmp_path: Path,
    *,
    states: dict[str, AgentIndexState] | None = None,
    clock: FakeClock | None = None,
) -> CollectionManager:
    backend = QmdBackend(BackendState(), runner=fake_qmd)
    return CollectionManager(
        backend,
        tmp_path / "turns",
        states if states is not None else {},
        clock=clock or FakeClock(),
    )


class TestNaming:
    def test_sanitize_id(self) -> None:
        assert sanitize_id("My Agent.v2") == "my-agent-v2"
        assert sanitize_id("coder_1") == "coder_1"
        assert sanitize_id("助手") == "--"

    def test_collection_name(self) -> None:
        assert collection_name("Main") == "tinyclaw-main"

    def test_agent_turns_dir(self, tmp_path: Path) -> None:
        assert agent_turns_dir(tmp_path, "Ops Bot") == tmp_path / "ops-bot"


class TestEnsure:
    @pytest.mark.asyncio
    async def test_creates_dir_and_registers(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        name = await manager.ensure("Main")

        assert name == "tinyclaw-main"
        turns_dir = tmp_path / "turns" / "main"
        assert turns_dir.is_dir()
        calls = fake_qmd.calls_for("collection")
        assert len(calls) == 1
        assert calls[0].args == [
            "collection", "add", str(turns_dir),
            "--name", "tinyclaw-main",
            "--mask", "**/*.md",
        ]

    @pytest.mark.asyncio
    async def test_idempotent(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        await manager.ensure("main")
        await manager.ensure("main")

        assert len(fake_qmd.calls_for("collection")) == 1

    @pytest.mark.asyncio
    async def test_already_exists_is_success(self, fake_qmd, tmp_path: Path) -> None:
        fake_qmd.handlers["collection"] = lambda call: BackendCommandError(
            "Collection 'tinyclaw-main' already exists"
        )
        states: dict[str, AgentIndexState] = {}
        manager = _make_manager(fake_qmd, tmp_path, states=states)

        assert await manager.ensure("main") == "tinyclaw-main"
        assert states["tinyclaw-main"].prepared is True

        await manager.ensure("main")
        assert len(fake_qmd.calls_for("collection")) == 1

    @pytest.mark.asyncio
    async def test_other_failure_propagates_and_retries_later(
        self, fake_qmd, tmp_path: Path
    ) -> None:
        fake_qmd.handlers["collection"] = lambda call: BackendTimeoutError("timed out")
        states: dict[str, AgentIndexState] = {}
        manager = _make_manager(fake_qmd, tmp_path, states=states)

        with pytest.raises(BackendTimeoutError):
            await manager.ensure("main")
        assert states["tinyclaw-main"].prepared is False

        del fake_qmd.handlers["collection"]
        await manager.ensure("main")
        assert len(fake_qmd.calls_for("collection")) == 2
        assert states["tinyclaw-main"].prepared is True

    @pytest.mark.asyncio
    async def test_concurrent_ensure_registers_once(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        names = await asyncio.gather(*(manager.ensure("main") for _ in range(5)))

        assert set(names) == {"tinyclaw-main"}
        assert len(fake_qmd.calls_for("collection")) == 1

    @pytest.mark.asyncio
    async def test_agents_independent(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        await manager.ensure("alpha")
        await manager.ensure("beta")

        assert len(fake_qmd.calls_for("collection")) == 2


class TestMaybeRefresh:
    @pytest.mark.asyncio
    async def test_first_call_updates(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        assert await manager.maybe_refresh("tinyclaw-main", 120) is True

        calls = fake_qmd.calls_for("update")
        assert [c.args for c in calls] == [["update", "--collections", "tinyclaw-main"]]

    @pytest.mark.asyncio
    async def test_cooldown(self, fake_qmd, tmp_path: Path) -> None:
        clock = FakeClock()
        manager = _make_manager(fake_qmd, tmp_path, clock=clock)

        await manager.maybe_refresh("tinyclaw-main", 120)
        for step in (1, 30, 60, 119):
            clock.now = 1000.0 + step
            assert await manager.maybe_refresh("tinyclaw-main", 120) is False
        assert len(fake_qmd.calls_for("update")) == 1

        clock.now = 1120.0
        assert await manager.maybe_refresh("tinyclaw-main", 120) is True
        assert len(fake_qmd.calls_for("update")) == 2

    @pytest.mark.asyncio
    async def test_failure_does_not_advance_timestamp(self, fake_qmd, tmp_path: Path) -> None:
        fake_qmd.handlers["update"] = lambda call: BackendCommandError("index locked")
        states: dict[str, AgentIndexState] = {}
        manager = _make_manager(fake_qmd, tmp_path, states=states)

        with pytest.raises(BackendCommandError):
            await manager.maybe_refresh("tinyclaw-main", 120)
        assert states["tinyclaw-main"].last_update is None

        del fake_qmd.handlers["update"]
        assert await manager.maybe_refresh("tinyclaw-main", 120) is True

    @pytest.mark.asyncio
    async def test_concurrent_refresh_runs_once(self, fake_qmd, tmp_path: Path) -> None:
        manager = _make_manager(fake_qmd, tmp_path)

        issued = await asyncio.gather(
            *(manager.maybe_refresh("tinyclaw-main", 120) for _ in range(5))
        )

        assert sum(issued) == 1
        assert len(fake_qmd.calls_for("update")) == 1
