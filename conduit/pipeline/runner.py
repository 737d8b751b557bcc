"""
Pipeline Runner for Conduit.

Runs a pipeline's steps strictly in declaration order against one
ExecutionContext and returns a PipelineOutcome. The runner never raises for
a step failure; it halts, and the outcome carries the failing step's
output. Cancellation is the only thing that escapes.

Execution plan for one run:

    interpreter                      (if declared; raw payload -> parsed)
    implicit steps `before: first`   (prelude)
    for each declared step:
        implicit steps `before: each`
        the step
        implicit steps `after: each`
    implicit steps `after: last`     (epilogue)

Data flow: each declared step without mappings receives the previous
declared step's output (the interpreted payload for the first one).
Implicit steps see that same value but never replace it; their outputs are
addressable by name only.

Nested `pipeline:` and `call:` steps re-enter this runner with a forked
context. An `async: true` step is started in the background with the input
it would have received and is never awaited: the run continues with the
previous output, and a background failure is logged, not reported.

Outcome shape:
    success -> final step output, with "success": True added to mappings
    failure -> {"success": False, "error", "error_type", "step", ...}
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from conduit.config.schemas import Document, ImplicitPosition, Pipeline, ProviderKind, Step
from conduit.errors import ConduitError, ProviderInvocationError

from .context import ExecutionContext, ParsedPayload, PipelineOutcome, RawPayload
from .observability import PipelineMetrics, RunLogger, get_metrics
from .step import PipelineProvider

if TYPE_CHECKING:
    from .executor import StepExecutor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedStep:
    """A step scheduled for a run, with its role in the data flow."""

    step: Step
    name: str
    implicit: bool = False
    interpreter: bool = False

    @property
    def detached(self) -> bool:
        return self.step.is_async and not (self.implicit or self.interpreter)


class _StepFailed(Exception):
    def __init__(self, step_name: str, error: Exception):
        self.step_name = step_name
        self.error = error
        super().__init__(str(error))


class PipelineRunner:
    """
    Executes pipelines.

    Example:
        runner = PipelineRunner(executor, implicit_steps=doc.apis.global_options.implicit_steps)
        outcome = await runner.run(pipeline, ExecutionContext(args={"name": "x"}))
        if not outcome.success:
            print(outcome.body["error"])

    `document` is where `pipeline:` and `call:` steps find their targets by
    name; the Engine replaces it on every reload.
    """

    def __init__(
        self,
        executor: "StepExecutor",
        *,
        implicit_steps: tuple[Step, ...] = (),
        document: Document | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.executor = executor
        self.implicit_steps = tuple(implicit_steps)
        self.document = document
        self.metrics = metrics or get_metrics()
        self._background: set[asyncio.Task[Any]] = set()

    # -------------------------------------------------------------------------
    # Planning
    # -------------------------------------------------------------------------

    def _implicit(
        self,
        before: ImplicitPosition | None = None,
        after: ImplicitPosition | None = None,
    ) -> list[Step]:
        return [
            s
            for s in self.implicit_steps
            if (before is not None and s.before == before)
            or (after is not None and s.after == after)
        ]

    def plan(self, pipeline: Pipeline) -> list[PlannedStep]:
        """Expand a pipeline into the ordered list of steps one run executes."""
        planned: list[PlannedStep] = []
        if pipeline.interpreter is not None:
            planned.append(
                PlannedStep(pipeline.interpreter, pipeline.interpreter.name, interpreter=True)
            )

        for s in self._implicit(before=ImplicitPosition.FIRST):
            planned.append(PlannedStep(s, s.name, implicit=True))

        before_each = self._implicit(before=ImplicitPosition.EACH)
        after_each = self._implicit(after=ImplicitPosition.EACH)
        for step in pipeline.steps:
            for s in before_each:
                planned.append(PlannedStep(s, f"{s.name}[{step.name}]", implicit=True))
            planned.append(PlannedStep(step, step.name))
            for s in after_each:
                planned.append(PlannedStep(s, f"{s.name}[{step.name}]", implicit=True))

        for s in self._implicit(after=ImplicitPosition.LAST):
            planned.append(PlannedStep(s, s.name, implicit=True))
        return planned

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        payload: Any = None,
    ) -> PipelineOutcome:
        """
        Run a pipeline to a terminal outcome.

        Args:
            pipeline: Pipeline to execute
            ctx: Fresh execution context for this unit of work
            payload: Initial input; a dict, ParsedPayload or RawPayload.
                Defaults to the context args.
        """
        current = _initial_payload(payload, ctx)
        plan = self.plan(pipeline)
        run_log = RunLogger(pipeline.name, ctx)
        run_log.started([p.name for p in plan])

        try:
            for position, planned in enumerate(plan):
                if planned.detached:
                    self._detach(planned, ctx, current, position, run_log)
                    continue
                output = await self._run_step(planned, ctx, current, position, run_log)
                if not planned.implicit:
                    current = output
        except _StepFailed as failed:
            outcome = self._failure(pipeline, ctx, failed.step_name, failed.error)
            run_log.finished(outcome)
            self.metrics.record_execution(False, outcome.duration_ms)
            return outcome

        outcome = PipelineOutcome(
            context=ctx,
            pipeline_name=pipeline.name,
            success=True,
            body=_success_body(current),
        )
        run_log.finished(outcome)
        self.metrics.record_execution(True, outcome.duration_ms)
        return outcome

    async def _run_step(
        self,
        planned: PlannedStep,
        ctx: ExecutionContext,
        current: Any,
        position: int,
        run_log: RunLogger,
    ) -> Any:
        step = planned.step
        run_log.step_started(planned.name, str(step.provider), position)
        try:
            output = await self._invoke(planned, ctx, current)
            if planned.interpreter and isinstance(output, dict):
                output = ParsedPayload(fields=output)
            ctx.record_output(
                planned.name,
                output.fields if isinstance(output, ParsedPayload) else output,
                positional=not (planned.implicit or planned.interpreter),
            )
        except Exception as e:
            attempts = ctx.step_attempts.get(step.name, 1)
            run_log.step_failed(planned.name, e, attempts)
            if not isinstance(e, ConduitError):
                logger.error(f"Step '{planned.name}' raised unexpectedly: {e}", exc_info=True)
            raise _StepFailed(planned.name, e) from e

        run_log.step_done(
            planned.name,
            ctx.step_timings.get(step.name, 0.0),
            ctx.step_attempts.get(step.name, 1),
        )
        return output

    async def _invoke(self, planned: PlannedStep, ctx: ExecutionContext, current: Any) -> Any:
        step = planned.step
        payload = self.executor.build_input(step, ctx, current)
        provider = self._nested_provider(step) if step.provider.is_nested else None
        output = await self.executor.execute(step, payload, ctx, provider=provider)
        if isinstance(output, dict) and output.get("success") is False:
            raise ProviderInvocationError(
                planned.name,
                str(output.get("error") or "step reported failure"),
                output=output,
            )
        return output

    def _nested_provider(self, step: Step) -> PipelineProvider:
        ref = step.provider
        target = step.pipeline
        if target is None and self.document is not None:
            if ref.kind == ProviderKind.CALL:
                target = self.document.call_target(ref.name)
            else:
                target = self.document.pipeline(ref.name)
        if target is None:
            raise ProviderInvocationError(
                step.name, f"Unknown {ref.kind.value} target '{ref.name}'"
            )
        return PipelineProvider(step.name, ref, target, self)

    # -------------------------------------------------------------------------
    # Background steps
    # -------------------------------------------------------------------------

    def _detach(
        self,
        planned: PlannedStep,
        ctx: ExecutionContext,
        current: Any,
        position: int,
        run_log: RunLogger,
    ) -> None:
        run_log.step_started(planned.name, str(planned.step.provider), position)
        task = asyncio.create_task(
            self._run_detached(planned, ctx, current, run_log), name=f"async_step_{planned.name}"
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_detached(
        self,
        planned: PlannedStep,
        ctx: ExecutionContext,
        current: Any,
        run_log: RunLogger,
    ) -> None:
        step = planned.step
        try:
            await self._invoke(planned, ctx, current)
        except Exception as e:
            run_log.step_failed(planned.name, e, ctx.step_attempts.get(step.name, 1))
            logger.warning(f"Background step '{planned.name}' failed: {e}")
            return
        run_log.step_done(
            planned.name,
            ctx.step_timings.get(step.name, 0.0),
            ctx.step_attempts.get(step.name, 1),
        )

    @property
    def pending(self) -> int:
        """Background steps still running."""
        return len(self._background)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for background steps; cancel whatever is left after `timeout`."""
        if not self._background:
            return
        tasks = list(self._background)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(f"Cancelled {len(still_running)} background step(s)")
            await asyncio.gather(*still_running, return_exceptions=True)

    def _failure(
        self,
        pipeline: Pipeline,
        ctx: ExecutionContext,
        step_name: str,
        error: Exception,
    ) -> PipelineOutcome:
        body: dict[str, Any] = {
            "error": _error_message(error),
            "error_type": type(error).__name__,
        }
        if isinstance(error, ProviderInvocationError):
            body["error_kind"] = error.kind.value
            if error.exit_code is not None:
                body["exit_code"] = error.exit_code
            body.update(error.output)
        body["success"] = False
        body["step"] = step_name

        return PipelineOutcome(
            context=ctx,
            pipeline_name=pipeline.name,
            success=False,
            body=body,
            failed_step=step_name,
            error=str(body["error"]),
        )


def _initial_payload(payload: Any, ctx: ExecutionContext) -> Any:
    if payload is None:
        return ParsedPayload(fields=dict(ctx.args))
    if isinstance(payload, (ParsedPayload, RawPayload)):
        return payload
    if isinstance(payload, dict):
        return ParsedPayload(fields=payload)
    return payload


def _success_body(value: Any) -> Any:
    if isinstance(value, ParsedPayload):
        value = dict(value.fields)
    if isinstance(value, dict) and "success" not in value:
        return {**value, "success": True}
    return value


def _error_message(error: Exception) -> str:
    if isinstance(error, ProviderInvocationError):
        # Strip the "[step] " prefix; the step is reported separately
        return str(error).split("] ", 1)[-1]
    return str(error)
