"""Attoloop error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any

# Keep diagnostics readable; agents can print megabytes per iteration.
OUTPUT_TAIL_CHARS = 4000


class ErrorCategory(StrEnum):
    """Category of error for classification and handling."""

    SPAWN = "spawn"
    PROCESS = "process"
    STATUS = "status"
    TERMINATION = "termination"
    VERIFICATION = "verification"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class LoopError(Exception):
    """Base error for all attoloop exceptions."""

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    @property
    def is_fatal(self) -> bool:
        return self.category in (ErrorCategory.SPAWN, ErrorCategory.INTERNAL)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, category={self.category!r})"


def tail(text: str, limit: int = OUTPUT_TAIL_CHARS) -> str:
    return text[-limit:] if len(text) > limit else text


class SpawnError(LoopError):
    """The agent binary could not be launched (missing, not executable, ...)."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, category=ErrorCategory.SPAWN, **kwargs)
        self.command = command
        self.stdout = tail(stdout)
        self.stderr = tail(stderr)


class NonZeroExitError(LoopError):
    """The agent exited with a failure code or was killed by a signal."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        signal: int | None = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs: Any,
    ) -> None:
        super().__init__(message, category=ErrorCategory.PROCESS, retryable=True, **kwargs)
        self.exit_code = exit_code
        self.signal = signal
        self.stdout = tail(stdout)
        self.stderr = tail(stderr)

    @property
    def output_tail(self) -> str:
        combined = "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)
        return tail(combined, 1000)


class StatusParseError(LoopError):
    """The status artifact was unreadable or failed schema validation."""

    def __init__(self, message: str, *, path: str = "", **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.STATUS, **kwargs)
        self.path = path


class TerminationError(LoopError):
    """A signal could not be delivered while shutting the agent down."""

    def __init__(self, message: str, *, pid: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.TERMINATION, **kwargs)
        self.pid = pid


class VerificationExhaustedError(LoopError):
    """Verification attempts ran out before the work was confirmed."""

    def __init__(self, message: str, *, attempts: int = 0, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.VERIFICATION, **kwargs)
        self.attempts = attempts


class ProcessStateError(LoopError):
    """Programmer error: the process handle was used out of order."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.INTERNAL, **kwargs)


class ConfigError(LoopError):
    """Invalid configuration value."""

    def __init__(self, message: str, *, key: str | None = None, **kwargs: Any) -> None:
        super().__init__(message, category=ErrorCategory.CONFIGURATION, **kwargs)
        self.key = key
