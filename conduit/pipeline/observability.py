"""
Observability for Conduit.

Every pipeline run, whatever started it, leaves two traces:

- JSON log records (one object per line, through stdlib logging) that
  carry the run's execution id, pipeline name, trigger source and
  configuration epoch, so a single run can be grepped out of a busy log
- counters and bounded duration windows in a PipelineMetrics instance,
  shared by the runner, the event router and the job scheduler

Usage:
    run_log = RunLogger("create_team", ctx)
    run_log.started(["validate", "insert"])
    run_log.step_done("validate", duration_ms=12.3, attempts=1)
    run_log.finished(outcome)

    get_metrics().get_stats()["jobs"]   # {"fired": 4, "skipped": 1}
"""

from __future__ import annotations

import json
import logging
import statistics
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .context import ExecutionContext, PipelineOutcome

logger = logging.getLogger(__name__)


# =============================================================================
# JSON records
# =============================================================================


@dataclass
class JSONLogger:
    """
    Logger whose messages are JSON objects.

    Keyword arguments become record fields:

        log.info("Step failed", step="insert", attempts=3)
        {"ts": "...", "level": "info", "message": "Step failed",
         "execution_id": "...", "step": "insert", "attempts": 3}
    """

    name: str = "conduit"
    execution_id: str | None = None
    extra_context: dict[str, Any] = field(default_factory=dict)

    @property
    def target(self) -> logging.Logger:
        return logging.getLogger(self.name)

    def log(self, level: int, message: str, **fields: Any) -> None:
        target = self.target
        if not target.isEnabledFor(level):
            return
        record: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": logging.getLevelName(level).lower(),
            "message": message,
        }
        if self.execution_id:
            record["execution_id"] = self.execution_id
        record.update(self.extra_context)
        record.update(fields)
        target.log(level, json.dumps(record, default=str))

    def debug(self, message: str, **fields: Any) -> None:
        self.log(logging.DEBUG, message, **fields)

    def info(self, message: str, **fields: Any) -> None:
        self.log(logging.INFO, message, **fields)

    def warning(self, message: str, **fields: Any) -> None:
        self.log(logging.WARNING, message, **fields)

    def error(self, message: str, **fields: Any) -> None:
        self.log(logging.ERROR, message, **fields)

    def with_context(self, **extra: Any) -> "JSONLogger":
        return JSONLogger(self.name, self.execution_id, {**self.extra_context, **extra})


class RunLogger:
    """Lifecycle records for one pipeline run."""

    def __init__(self, pipeline_name: str, ctx: "ExecutionContext"):
        self.log = JSONLogger(
            name="conduit.pipeline",
            execution_id=str(ctx.execution_id),
            extra_context={
                "pipeline": pipeline_name,
                "source": ctx.source,
                "epoch": ctx.snapshot_epoch,
            },
        )

    def started(self, step_names: list[str]) -> None:
        self.log.info("Pipeline started", steps=step_names)

    def step_started(self, step_name: str, provider: str, position: int) -> None:
        self.log.debug("Step started", step=step_name, provider=provider, position=position)

    def step_done(self, step_name: str, duration_ms: float, attempts: int) -> None:
        self.log.debug(
            "Step completed", step=step_name, duration_ms=round(duration_ms, 2), attempts=attempts
        )

    def step_failed(self, step_name: str, error: BaseException, attempts: int) -> None:
        self.log.warning(
            "Step failed",
            step=step_name,
            error=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
        )

    def finished(self, outcome: "PipelineOutcome") -> None:
        duration_ms = round(outcome.duration_ms, 2)
        if outcome.success:
            self.log.info("Pipeline completed", duration_ms=duration_ms)
        else:
            self.log.warning(
                "Pipeline failed",
                duration_ms=duration_ms,
                failed_step=outcome.failed_step,
                error=outcome.error,
            )


# =============================================================================
# Metrics
# =============================================================================


class _Count:
    """Read-only view of one PipelineMetrics counter."""

    def __set_name__(self, owner: type, name: str) -> None:
        self.key = name

    def __get__(self, obj: "PipelineMetrics | None", objtype: type | None = None) -> Any:
        if obj is None:
            return self
        return obj.counts[self.key]


def _percentile(window: deque[float], p: int) -> float | None:
    if not window:
        return None
    if len(window) == 1:
        return window[0]
    return statistics.quantiles(window, n=100, method="inclusive")[p - 1]


@dataclass
class PipelineMetrics:
    """
    In-process counters plus rolling duration windows.

    Windows keep the most recent `max_histogram_entries` samples. Nothing
    is exported; a host reads get_stats() and ships it wherever it likes.
    """

    max_histogram_entries: int = 1000
    counts: Counter[str] = field(default_factory=Counter)
    execution_durations_ms: deque[float] = field(init=False)
    step_durations_ms: dict[str, deque[float]] = field(default_factory=dict)

    executions_total = _Count()
    executions_success = _Count()
    executions_failed = _Count()
    steps_executed = _Count()
    retries_total = _Count()
    events_delivered = _Count()
    delivery_failures = _Count()
    job_fires = _Count()
    job_fires_skipped = _Count()

    def __post_init__(self) -> None:
        self.execution_durations_ms = deque(maxlen=self.max_histogram_entries)

    def record_execution(self, success: bool, duration_ms: float) -> None:
        self.counts["executions_total"] += 1
        self.counts["executions_success" if success else "executions_failed"] += 1
        self.execution_durations_ms.append(duration_ms)

    def record_step(self, name: str, duration_ms: float) -> None:
        self.counts["steps_executed"] += 1
        window = self.step_durations_ms.get(name)
        if window is None:
            window = self.step_durations_ms[name] = deque(maxlen=self.max_histogram_entries)
        window.append(duration_ms)

    def record_retries(self, count: int) -> None:
        self.counts["retries_total"] += count

    def record_delivery(self, success: bool) -> None:
        self.counts["events_delivered" if success else "delivery_failures"] += 1

    def record_job_fire(self, skipped: bool = False) -> None:
        self.counts["job_fires_skipped" if skipped else "job_fires"] += 1

    def get_stats(self) -> dict[str, Any]:
        total = self.executions_total
        return {
            "executions": {
                "total": total,
                "success": self.executions_success,
                "failed": self.executions_failed,
                "success_rate": self.executions_success / total if total else None,
            },
            "duration_ms": {
                f"p{p}": _percentile(self.execution_durations_ms, p) for p in (50, 95, 99)
            },
            "steps_executed": self.steps_executed,
            "retries_total": self.retries_total,
            "events": {"delivered": self.events_delivered, "failed": self.delivery_failures},
            "jobs": {"fired": self.job_fires, "skipped": self.job_fires_skipped},
        }

    def reset(self) -> None:
        self.counts.clear()
        self.execution_durations_ms.clear()
        self.step_durations_ms.clear()


_global_metrics = PipelineMetrics()


def get_metrics() -> PipelineMetrics:
    """Process-wide metrics, used when a component is not handed its own."""
    return _global_metrics


def reset_metrics() -> None:
    _global_metrics.reset()


__all__ = [
    "JSONLogger",
    "PipelineMetrics",
    "RunLogger",
    "get_metrics",
    "reset_metrics",
]
