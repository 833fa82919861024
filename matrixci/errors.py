"""Exception types shared across matrixci."""
from __future__ import annotations

from typing import Any, Dict, Optional


class MatrixCIError(Exception):
    """Base class for matrixci errors."""


class ConfigurationError(MatrixCIError):
    """Raised when a declaration is malformed or inconsistent.

    Always raised before any job instance starts.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if not self.details:
            return self.message
        extra = ", ".join(f"{k}={v}" for k, v in self.details.items())
        return f"{self.message} ({extra})"


class StepFailure(MatrixCIError):
    """A step exited non-zero, timed out, or could not be started."""

    def __init__(
        self,
        step: str,
        returncode: Optional[int] = None,
        error: Optional[str] = None,
        timed_out: bool = False,
        output: Optional[Dict[str, Any]] = None,
    ):
        self.step = step
        self.returncode = returncode
        self.error = error
        self.timed_out = timed_out
        self.output = output or {}
        if error:
            msg = f"step '{step}' failed: {error}"
        else:
            msg = f"step '{step}' failed (exit={returncode})"
        super().__init__(msg)


class CancellationError(MatrixCIError):
    """Raised when a run has been cancelled externally."""
