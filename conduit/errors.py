"""
Error taxonomy for Conduit.

Every exception raised by the engine derives from ConduitError so callers
can catch engine faults without catching unrelated exceptions.

Classification:
- Load time: ConfigValidationError, ExpressionSyntaxError
- Run time (become failing-step outcomes): UnresolvedReferenceError,
  ProviderInvocationError
- Surface level: NoResponseMatchedError, ColumnTransformError,
  ConstraintViolationError

JobOverlapSkipped is not an exception. It is an informational record the
scheduler logs when a fire is dropped because the previous run is still
in flight.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConduitError(Exception):
    """Base class for all engine errors."""


# =============================================================================
# Load-time errors
# =============================================================================


class ConfigValidationError(ConduitError):
    """
    Raised when an assembled document fails validation.

    Carries every issue found, not only the first, so a broken reload can be
    reported in one pass. Fatal for the snapshot being loaded; a previously
    active snapshot stays in place.
    """

    def __init__(self, issues: list[str] | str):
        if isinstance(issues, str):
            issues = [issues]
        self.issues = list(issues)
        super().__init__("; ".join(self.issues))


class ExpressionSyntaxError(ConfigValidationError):
    """Raised when a mapping or condition expression cannot be parsed."""

    def __init__(self, expression: str, message: str, position: int | None = None):
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"Invalid expression '{expression}'{where}: {message}")


# =============================================================================
# Run-time errors
# =============================================================================


class UnresolvedReferenceError(ConduitError):
    """Raised when an expression references args, env or a step that does not exist."""

    def __init__(self, expression: str, path: str):
        self.expression = expression
        self.path = path
        super().__init__(f"Unresolved reference '{path}' in expression '{expression}'")


class InvocationErrorKind(str, Enum):
    """Classification of provider invocation failures."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    FAILED = "failed"


class ProviderInvocationError(ConduitError):
    """
    Raised when a step's provider cannot produce an output.

    TIMEOUT and UNREACHABLE are transient and may be retried.
    FAILED means the provider explicitly signalled failure and is never retried.
    """

    def __init__(
        self,
        step_name: str,
        message: str,
        *,
        kind: InvocationErrorKind = InvocationErrorKind.FAILED,
        exit_code: int | None = None,
        output: dict[str, Any] | None = None,
    ):
        self.step_name = step_name
        self.kind = kind
        self.exit_code = exit_code
        self.output = output or {}
        super().__init__(f"[{step_name}] {message}")

    @property
    def transient(self) -> bool:
        return self.kind in (InvocationErrorKind.TIMEOUT, InvocationErrorKind.UNREACHABLE)

    @classmethod
    def timeout(cls, step_name: str, seconds: float) -> "ProviderInvocationError":
        return cls(
            step_name,
            f"Provider timed out after {seconds:.1f}s",
            kind=InvocationErrorKind.TIMEOUT,
        )

    @classmethod
    def unreachable(cls, step_name: str, detail: str) -> "ProviderInvocationError":
        return cls(
            step_name,
            f"Provider unreachable: {detail}",
            kind=InvocationErrorKind.UNREACHABLE,
        )


# =============================================================================
# Surface errors
# =============================================================================


class NoResponseMatchedError(ConduitError):
    """Raised when no response rule of an endpoint matches a pipeline outcome."""

    def __init__(self, endpoint_name: str, rule_count: int):
        self.endpoint_name = endpoint_name
        self.rule_count = rule_count
        super().__init__(
            f"No response rule matched for endpoint '{endpoint_name}' "
            f"({rule_count} rules evaluated)"
        )


class ColumnTransformError(ConduitError):
    """Raised when a column transform phase fails; the row operation is rejected."""

    def __init__(self, table: str, column: str, phase: str, reason: str):
        self.table = table
        self.column = column
        self.phase = phase
        self.reason = reason
        super().__init__(f"{phase} transform failed for {table}.{column}: {reason}")


class ConstraintViolationError(ConduitError):
    """Raised by the reference table store when a row operation breaks a constraint."""

    def __init__(self, table: str, constraint: str, message: str):
        self.table = table
        self.constraint = constraint
        super().__init__(f"{table}: constraint '{constraint}' violated: {message}")


# =============================================================================
# Informational records
# =============================================================================


@dataclass(frozen=True)
class JobOverlapSkipped:
    """A scheduled fire that was dropped because the previous run was still running."""

    job_name: str
    scheduled_for: datetime | None
    running_since: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job": self.job_name,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "running_since": self.running_since.isoformat() if self.running_since else None,
            **self.metadata,
        }
