"""Shared pytest fixtures for tinyclaw memory tests.

qmd is never required: FakeQmd stands in for run_command, records every
invocation, and answers per subcommand from scripted handlers. Tests that
need a real child process use the running Python interpreter instead.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from src.config.settings import MemorySettings, QmdSettings, Settings
from src.memory.backend import CommandResult


@dataclass
class Call:
    command: str
    args: list[str]
    timeout_s: float
    env: dict[str, str] | None

    @property
    def subcommand(self) -> str:
        return self.args[0] if self.args else ""

    @property
    def query(self) -> str:
        return self.args[1]


Handler = Callable[[Call], "str | Exception"]


class FakeQmd:
    """Scripted stand-in for run_command.

    handlers maps a subcommand ("--help", "collection", "update", "search",
    "vsearch") to a callable returning stdout or an exception to raise.
    Unscripted subcommands succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.handlers: dict[str, Handler] = {}

    async def __call__(
        self,
        command: str,
        args: list[str],
        *,
        timeout_s: float,
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        call = Call(command=command, args=list(args), timeout_s=timeout_s, env=dict(env) if env else None)
        self.calls.append(call)
        # Yield like a real subprocess would, so concurrent callers interleave.
        await asyncio.sleep(0)
        handler = self.handlers.get(call.subcommand)
        if handler is None:
            return CommandResult(stdout="", stderr="")
        out = handler(call)
        if isinstance(out, Exception):
            raise out
        return CommandResult(stdout=out, stderr="")

    def calls_for(self, subcommand: str) -> list[Call]:
        return [c for c in self.calls if c.subcommand == subcommand]

    def answer_searches(self, hits_by_query: dict[str, list[dict]]) -> None:
        """Make search/vsearch return hits for exact query strings, [] otherwise."""

        def handler(call: Call) -> str:
            return json.dumps(hits_by_query.get(call.query, []))

        self.handlers["search"] = handler
        self.handlers["vsearch"] = handler


@pytest.fixture
def fake_qmd() -> FakeQmd:
    return FakeQmd()


@pytest.fixture
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build Settings rooted at tmp_path with memory enabled.

    Keyword overrides go to QmdSettings; pass memory_enabled=False to turn
    the global switch off.
    """

    def _make(*, memory_enabled: bool = True, **qmd_overrides) -> Settings:
        return Settings(
            memory=MemorySettings(
                enabled=memory_enabled,
                root_path=tmp_path / "memory",
                qmd=QmdSettings(**qmd_overrides),
            )
        )

    return _make
