"""Exception types shared across the reconcile pipeline."""

from __future__ import annotations

from typing import List, Optional, Tuple


class PreconditionError(Exception):
    """A render input is missing, invalid or not ready.

    ``reason`` and ``message`` form the degraded status pair reported for the pass.
    """

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(f"{reason}: {message}" if message else reason)
        self.reason = reason
        self.message = message


class DeferredPrecondition(PreconditionError):
    """Not satisfied yet; retried on the next trigger, never an error."""

    def __init__(self, reason: str, message: str = "", requeue_after: float = 0.0) -> None:
        super().__init__(reason, message)
        self.requeue_after = requeue_after


class FatalPrecondition(PreconditionError):
    """A required input is missing; the pass fails and ambient backoff applies."""


class ApplyError(Exception):
    """One or more desired objects could not be created or updated."""

    def __init__(self, failures: List[Tuple[str, Exception]]) -> None:
        if not failures:
            raise ValueError("ApplyError requires at least one failure")
        self.failures = list(failures)
        summary = "; ".join(f"{key}: {exc}" for key, exc in self.failures)
        super().__init__(f"{len(self.failures)} object(s) failed to apply: {summary}")

    @property
    def first(self) -> Tuple[str, Exception]:
        return self.failures[0]


class ReconcileError(Exception):
    """Raised from the reconcile entry point so the dispatcher backs off."""

    def __init__(self, reason: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{reason}: {message}")
        self.reason = reason
        self.message = message
        self.cause = cause


class ConfigError(Exception):
    """Raised when the operator configuration cannot be loaded."""


__all__ = [
    "ApplyError",
    "ConfigError",
    "DeferredPrecondition",
    "FatalPrecondition",
    "PreconditionError",
    "ReconcileError",
]
