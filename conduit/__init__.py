"""
Conduit - a declarative pipeline execution engine.

Configuration documents describe tables, endpoints, subscriptions and jobs.
Every one of those features runs on the same mechanism: an ordered sequence
of steps executed against a context, with field mappings resolved between
steps. Conduit is that executor plus its four invocation contexts:

- **Column transforms**: write / read / args phases per column
- **Endpoints**: request -> pipeline -> first matching response rule
- **Subscriptions**: storage or custom events -> pipeline -> every subscriber
- **Jobs**: interval schedules -> pipeline, never overlapping itself

Quick Start:
    >>> from conduit import Engine
    >>>
    >>> engine = Engine()
    >>> engine.load(["app.yaml"])
    >>> response = await engine.handle("POST", "/create_team", body={"name": "Core"})
    >>> response.status
    201
"""

__version__ = "0.1.0"

from conduit.config import ConfigStore, Document, EngineSettings, get_settings
from conduit.engine import Engine
from conduit.errors import (
    ColumnTransformError,
    ConduitError,
    ConfigValidationError,
    ConstraintViolationError,
    NoResponseMatchedError,
    ProviderInvocationError,
    UnresolvedReferenceError,
)
from conduit.pipeline import ExecutionContext, PipelineOutcome, PipelineRunner, StepExecutor

__all__ = [
    "__version__",
    # Engine
    "Engine",
    "EngineSettings",
    "get_settings",
    # Configuration
    "ConfigStore",
    "Document",
    # Pipeline
    "ExecutionContext",
    "PipelineOutcome",
    "PipelineRunner",
    "StepExecutor",
    # Errors
    "ColumnTransformError",
    "ConduitError",
    "ConfigValidationError",
    "ConstraintViolationError",
    "NoResponseMatchedError",
    "ProviderInvocationError",
    "UnresolvedReferenceError",
]
