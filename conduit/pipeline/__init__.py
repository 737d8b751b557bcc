"""
Conduit Pipeline Framework

One executor for every platform feature: an ordered sequence of steps run
against a context, with field mappings resolved between steps.

Core Components:
- ExecutionContext: Request-scoped state (args, env, step outputs)
- ExpressionResolver: Mapping sources and response conditions
- StepProvider: Builtin, image-backed or nested-pipeline step implementations
- StepExecutor: One step, with timeout and transient-failure retries
- PipelineRunner: Ordered steps to a PipelineOutcome
"""

from .context import ExecutionContext, ParsedPayload, Payload, PipelineOutcome, RawPayload
from .executor import StepExecutor
from .expressions import CompiledExpression, ExpressionResolver, compile_expression
from .observability import JSONLogger, PipelineMetrics, RunLogger, get_metrics, reset_metrics
from .retry import ConstantBackoff, ExponentialBackoff, NoBackoff, RetryPolicy, with_retry
from .runner import PipelineRunner
from .step import (
    BuiltinProvider,
    ImageProvider,
    PipelineProvider,
    ProviderRegistry,
    StepProvider,
)

__all__ = [
    "BuiltinProvider",
    "CompiledExpression",
    "ConstantBackoff",
    "ExecutionContext",
    "ExponentialBackoff",
    "ExpressionResolver",
    "ImageProvider",
    "JSONLogger",
    "NoBackoff",
    "ParsedPayload",
    "Payload",
    "PipelineMetrics",
    "PipelineOutcome",
    "PipelineProvider",
    "PipelineRunner",
    "ProviderRegistry",
    "RawPayload",
    "RetryPolicy",
    "RunLogger",
    "StepExecutor",
    "StepProvider",
    "compile_expression",
    "get_metrics",
    "reset_metrics",
    "with_retry",
]
