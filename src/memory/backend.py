"""qmd backend access: scoped process execution and executable probing.

Every call is a child process with a hard timeout. On timeout, or when the
calling task is cancelled, the child is killed and reaped before the error
propagates, so no invocation outlives its budget. No retries happen here;
callers decide what a failure means.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.constants import (
    QMD_BUN_BINARY,
    QMD_BUN_STORE_TS,
    QMD_COMMAND,
    QMD_DISABLE_EXPANSION_ENV,
)
from src.infra.errors import BackendCommandError, BackendTimeoutError, MemoryBackendError

logger = structlog.get_logger()

PROBE_TIMEOUT_S = 5.0
_AUTO_KEY = "__auto__"
_UNKNOWN_KEY = "__unknown__"


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str


Runner = Callable[..., Awaitable[CommandResult]]


async def run_command(
    command: str,
    args: Sequence[str],
    *,
    timeout_s: float,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run one backend command and capture its output.

    Raises:
        BackendTimeoutError: the command ran past timeout_s (child is killed).
        BackendCommandError: the command could not start or exited non-zero.
    """
    merged_env = {**os.environ, **env} if env else None
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise BackendCommandError(f"Failed to start {command}: {exc}") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_s)
    except TimeoutError:
        raise BackendTimeoutError(f"Command timed out after {timeout_s:g}s") from None
    finally:
        # Timeout and caller cancellation both land here with the child still running.
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()

    out = stdout.decode("utf-8", errors="replace")
    err = stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise BackendCommandError(
            err.strip() or f"Command exited with code {proc.returncode}",
            returncode=proc.returncode,
        )
    return CommandResult(stdout=out, stderr=err)


@dataclass
class BackendState:
    """Process-wide probe cache, keyed by the configured command."""

    checked_key: str | None = None
    available: bool = False
    command_path: str | None = None
    expansion_check_key: str | None = None
    expansion_supported: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class QmdBackend:
    """Locate the qmd executable and run subcommands against it."""

    def __init__(
        self,
        state: BackendState,
        *,
        runner: Runner = run_command,
        bun_binary: Path = QMD_BUN_BINARY,
        bun_store_ts: Path = QMD_BUN_STORE_TS,
    ) -> None:
        self._state = state
        self._runner = runner
        self._bun_binary = bun_binary
        self._bun_store_ts = bun_store_ts

    @property
    def command(self) -> str:
        return self._state.command_path or QMD_COMMAND

    async def probe(self, preferred_command: str | None = None) -> bool:
        """Return True if a qmd executable answers `--help`.

        The first answering candidate is cached for the lifetime of the state;
        a different preferred_command invalidates the cache.
        """
        key = preferred_command or _AUTO_KEY
        async with self._state.lock:
            if self._state.checked_key == key:
                return self._state.available

            self._state.checked_key = key
            self._state.available = False
            self._state.command_path = None

            candidates = (
                [preferred_command]
                if preferred_command
                else [str(self._bun_binary), QMD_COMMAND]
            )
            for candidate in candidates:
                try:
                    await self._runner(candidate, ["--help"], timeout_s=PROBE_TIMEOUT_S)
                except MemoryBackendError as exc:
                    logger.debug("qmd_probe_candidate_failed", candidate=candidate, error=str(exc))
                    continue
                self._state.command_path = candidate
                self._state.available = True
                break

            return self._state.available

    def expansion_supported(self) -> bool:
        """Whether the resolved qmd honors the disable-expansion env var.

        Only a patched global bun install is recognized. Cached per resolved path.
        """
        key = self._state.command_path or _UNKNOWN_KEY
        if self._state.expansion_check_key == key:
            return self._state.expansion_supported

        self._state.expansion_check_key = key
        self._state.expansion_supported = self._is_patched_install(self._state.command_path)
        return self._state.expansion_supported

    def _is_patched_install(self, command_path: str | None) -> bool:
        if command_path != str(self._bun_binary) or not self._bun_store_ts.is_file():
            return False
        try:
            src = self._bun_store_ts.read_text(encoding="utf-8")
        except OSError:
            logger.debug("qmd_store_unreadable", path=str(self._bun_store_ts))
            return False
        return QMD_DISABLE_EXPANSION_ENV in src

    async def run(
        self,
        args: Sequence[str],
        *,
        timeout_s: float,
        env: Mapping[str, str] | None = None,
    ) -> str:
        """Run a qmd subcommand with the resolved executable; return stdout."""
        result = await self._runner(self.command, list(args), timeout_s=timeout_s, env=env)
        return result.stdout
