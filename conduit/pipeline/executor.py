"""
Step Executor for Conduit.

Invokes exactly one step: resolves its provider, bounds the call with the
step timeout, retries transient failures and normalizes every provider
fault into ProviderInvocationError. Recording the output and deciding what
happens next belongs to the PipelineRunner.

Failure classification:
    timeout                   -> TIMEOUT, retried
    backend unreachable       -> UNREACHABLE, retried
    explicit provider failure -> FAILED, never retried
    any other exception       -> FAILED, never retried
    asyncio.CancelledError    -> propagates untouched
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any

from conduit.errors import ProviderInvocationError

from .expressions import ExpressionResolver
from .mapping import MappingApplier
from .observability import PipelineMetrics, get_metrics
from .retry import ExponentialBackoff, RetryPolicy, with_retry

if TYPE_CHECKING:
    from conduit.config.schemas import Step
    from conduit.config.settings import EngineSettings

    from .context import ExecutionContext
    from .step import ProviderRegistry, StepProvider

logger = logging.getLogger(__name__)


class StepExecutor:
    """
    Executes single steps.

    Example:
        executor = StepExecutor(registry, retry_policy=RetryPolicy(max_attempts=3))
        payload = executor.build_input(step, ctx, previous_output)
        output = await executor.execute(step, payload, ctx)
    """

    def __init__(
        self,
        registry: "ProviderRegistry",
        *,
        resolver: ExpressionResolver | None = None,
        retry_policy: RetryPolicy | None = None,
        default_timeout: float = 30.0,
        metrics: PipelineMetrics | None = None,
    ):
        self.registry = registry
        self.resolver = resolver or ExpressionResolver()
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=1)
        self.default_timeout = default_timeout
        self.metrics = metrics or get_metrics()
        self._mappings = MappingApplier(self.resolver)

    @classmethod
    def from_settings(
        cls,
        registry: "ProviderRegistry",
        settings: "EngineSettings",
        **kwargs: Any,
    ) -> "StepExecutor":
        policy = RetryPolicy(
            max_attempts=settings.retry_attempts,
            backoff=ExponentialBackoff(
                base=settings.retry_backoff_base,
                max_delay=settings.retry_backoff_max,
            ),
        )
        return cls(
            registry,
            retry_policy=policy,
            default_timeout=settings.step_timeout_seconds,
            **kwargs,
        )

    def build_input(self, step: "Step", ctx: "ExecutionContext", previous: Any) -> Any:
        """
        Construct a step's input payload.

        Raises:
            UnresolvedReferenceError: If a mapping source does not resolve
        """
        return self._mappings.build(step.mappings, ctx, previous)

    def timeout_for(self, step: "Step") -> float:
        return step.timeout_seconds or self.default_timeout

    async def execute(
        self,
        step: "Step",
        payload: Any,
        ctx: "ExecutionContext",
        *,
        provider: "StepProvider | None" = None,
    ) -> Any:
        """
        Invoke the step's provider with an already-built payload.

        `provider` overrides registry resolution; the runner passes one for
        nested pipeline and call steps.

        Returns:
            The provider output

        Raises:
            ProviderInvocationError: After retries are exhausted, or at once
                for non-transient failures
        """
        timeout = self.timeout_for(step)
        if provider is None:
            provider = self.registry.resolve(step.provider, step_name=step.name, timeout=timeout)

        async def attempt() -> Any:
            try:
                return await asyncio.wait_for(provider.invoke(payload, ctx), timeout=timeout)
            except TimeoutError as e:
                raise ProviderInvocationError.timeout(step.name, timeout) from e
            except ProviderInvocationError as e:
                if e.step_name != step.name:
                    raise ProviderInvocationError(
                        step.name,
                        str(e).split("] ", 1)[-1],
                        kind=e.kind,
                        exit_code=e.exit_code,
                        output=e.output,
                    ) from e
                raise
            except Exception as e:
                raise ProviderInvocationError(step.name, f"{type(e).__name__}: {e}") from e

        started = time.perf_counter()
        result = await with_retry(attempt, self.retry_policy, operation_name=step.name)
        duration_ms = (time.perf_counter() - started) * 1000

        ctx.step_attempts[step.name] = result.attempts
        ctx.record_timing(step.name, duration_ms)
        if result.attempts > 1:
            self.metrics.record_retries(result.attempts - 1)

        if not result.success:
            error = result.final_error
            if isinstance(error, ProviderInvocationError):
                raise error
            raise ProviderInvocationError(step.name, str(error)) from error

        self.metrics.record_step(step.name, duration_ms)
        return result.result
