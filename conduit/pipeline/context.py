"""
Execution Context for Conduit.

The context carries per-invocation state for one pipeline run: arguments,
environment, the outputs of executed steps (by name and by position) and
audit timings. One context is created per request, event or job tick and
discarded once the run reaches a terminal outcome.

The context never holds the configuration itself, only the epoch of the
snapshot the run started with, so a reload mid-run cannot change what the
run sees.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4


def _utc_now() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Payloads
# =============================================================================


@dataclass(frozen=True)
class ParsedPayload:
    """Structured input: named fields."""

    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RawPayload:
    """Opaque bytes, e.g. an uploaded file. Never inlined into a step request."""

    data: bytes
    content_type: str = "application/octet-stream"

    def __repr__(self) -> str:
        return f"RawPayload(content_type={self.content_type!r}, size={len(self.data)})"


Payload = ParsedPayload | RawPayload


@dataclass
class ExecutionContext:
    """
    Request-scoped state threaded through a pipeline run.

    Step outputs are append-only: once recorded under a name they are never
    replaced, and the positional order is the order of execution.
    """

    args: dict[str, Any] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)

    # Execution identification
    execution_id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=_utc_now)
    snapshot_epoch: int = 0
    source: str = ""  # "endpoint:create_team", "event:message", "job:nightly", ...

    # Step state
    position: int = 0
    _outputs: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _order: list[str] = field(default_factory=list, init=False, repr=False)
    _executed: list[str] = field(default_factory=list, init=False, repr=False)

    # Audit trail
    step_timings: dict[str, float] = field(default_factory=dict)
    step_attempts: dict[str, int] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> float:
        """Milliseconds since the run started."""
        delta = datetime.now(UTC) - self.started_at
        return delta.total_seconds() * 1000

    def record_output(self, step_name: str, output: Any, *, positional: bool = True) -> None:
        """
        Record a step output under its name.

        Positional outputs also take the next `pipeline[i]` index. Implicit
        and interpreter steps are recorded by name only, so indices always
        count the pipeline's own declared steps.
        """
        if step_name in self._outputs:
            raise ValueError(f"Step '{step_name}' already recorded an output")
        self._outputs[step_name] = output
        self._executed.append(step_name)
        if positional:
            self._order.append(step_name)
            self.position = len(self._order)

    def has_output(self, step_name: str) -> bool:
        return step_name in self._outputs

    def output(self, step_name: str) -> Any:
        return self._outputs[step_name]

    def positional_outputs(self) -> list[Any]:
        return [self._outputs[name] for name in self._order]

    @property
    def executed_steps(self) -> list[str]:
        return list(self._executed)

    @property
    def last_output(self) -> Any:
        if not self._executed:
            return None
        return self._outputs[self._executed[-1]]

    def record_timing(self, step_name: str, duration_ms: float) -> None:
        self.step_timings[step_name] = duration_ms

    def to_audit_dict(self) -> dict[str, Any]:
        """Generate audit record for logging."""
        return {
            "execution_id": str(self.execution_id),
            "source": self.source,
            "snapshot_epoch": self.snapshot_epoch,
            "started_at": self.started_at.isoformat(),
            "duration_ms": self.elapsed_ms,
            "executed_steps": self.executed_steps,
            "step_timings": self.step_timings,
            "step_attempts": self.step_attempts,
        }

    def fork(self, **overrides: Any) -> "ExecutionContext":
        """
        Create a fresh context sharing args and env but no step outputs.

        Nested `pipeline:` and `call:` steps run their target pipeline in a
        fork, so its step names never collide with the caller's.
        """
        values = {
            "args": copy.deepcopy(self.args),
            "env": dict(self.env),
            "snapshot_epoch": self.snapshot_epoch,
            "source": self.source,
        }
        values.update(overrides)
        return ExecutionContext(**values)


@dataclass
class PipelineOutcome:
    """
    Aggregate result of a pipeline run.

    `body` is what callers see: on success the final step's output, on
    failure `{"success": False, ...failing step output}`.
    """

    context: ExecutionContext
    pipeline_name: str
    success: bool = True
    body: Any = None
    failed_step: str | None = None
    error: str | None = None

    @property
    def execution_id(self) -> UUID:
        return self.context.execution_id

    @property
    def duration_ms(self) -> float:
        return self.context.elapsed_ms

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        return {
            "execution_id": str(self.execution_id),
            "pipeline": self.pipeline_name,
            "success": self.success,
            "failed_step": self.failed_step,
            "error": self.error,
            "duration_ms": self.duration_ms,
            "executed_steps": self.context.executed_steps,
        }
