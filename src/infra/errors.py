"""Custom exception hierarchy for tinyclaw memory.

All application-specific exceptions inherit from TinyClawError,
which carries an error code for structured log correlation.
"""

from __future__ import annotations


class TinyClawError(Exception):
    """Base exception for all tinyclaw errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class MemoryBackendError(TinyClawError):
    """Errors talking to the external qmd search backend."""

    def __init__(self, message: str, *, code: str = "BACKEND_ERROR") -> None:
        super().__init__(message, code=code)


class BackendCommandError(MemoryBackendError):
    """A backend invocation could not start or exited non-zero."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message, code="BACKEND_COMMAND_FAILED")
        self.returncode = returncode


class BackendTimeoutError(MemoryBackendError):
    """A backend invocation exceeded its timeout and was killed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="BACKEND_TIMEOUT")


class MemoryWriteError(TinyClawError):
    """A turn record could not be written to disk."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="MEMORY_WRITE_ERROR")
