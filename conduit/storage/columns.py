"""
Per-column data transforms.

A column may declare three independent phases, each a short pipeline:

    write   runs before a value is persisted
    read    runs after a value is retrieved (may suppress it to null)
    args    runs on predicate values, so lookups compare like with like

    columns:
      - name: password
        pipeline:
          write: hash1
          args: hash1
          read: "null"

The first step of a phase receives {"value", "column", "table"}. The phase
result is the `value` field of the final output, or the output itself when
a step returns a scalar. A failed phase raises ColumnTransformError.

Usage:
    columns = ColumnTransformPipeline(executor)
    stored = await columns.write_row(table, {"email": " A@B.COM "})
    value = columns.transform_sync("account", column, "args", "a@b.com")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from conduit.config.schemas import Column, Pipeline, Table
from conduit.errors import ColumnTransformError
from conduit.pipeline.context import ExecutionContext
from conduit.pipeline.observability import PipelineMetrics
from conduit.pipeline.runner import PipelineRunner

if TYPE_CHECKING:
    from conduit.pipeline.executor import StepExecutor

logger = logging.getLogger(__name__)

PHASES = ("args", "write", "read")


class ColumnTransformPipeline:
    """Runs column transform phases through the shared step executor."""

    def __init__(
        self,
        executor: "StepExecutor",
        *,
        env: dict[str, str] | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        # Column phases never get global implicit steps
        self.runner = PipelineRunner(executor, metrics=metrics)
        self.env = dict(env or {})
        self._pipelines: dict[tuple[str, str, str], tuple[Any, Pipeline]] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_lock = threading.Lock()

    def pipeline_for(self, table_name: str, column: Column, phase: str) -> Pipeline | None:
        if phase not in PHASES:
            raise ValueError(f"Unknown column pipeline phase '{phase}'")
        if column.pipeline is None:
            return None
        steps = column.pipeline.phase(phase)
        if not steps:
            return None

        key = (table_name, column.name, phase)
        cached = self._pipelines.get(key)
        if cached is not None and cached[0] is steps:
            return cached[1]
        pipeline = Pipeline(name=f"{table_name}.{column.name}:{phase}", steps=steps)
        self._pipelines[key] = (steps, pipeline)
        return pipeline

    def has_phase(self, column: Column, phase: str) -> bool:
        return column.pipeline is not None and bool(column.pipeline.phase(phase))

    # -------------------------------------------------------------------------
    # Single values
    # -------------------------------------------------------------------------

    async def transform(self, table_name: str, column: Column, phase: str, value: Any) -> Any:
        """
        Run one phase for one value.

        Raises:
            ColumnTransformError: If any step of the phase fails
        """
        pipeline = self.pipeline_for(table_name, column, phase)
        if pipeline is None:
            return value

        first_input = {"value": value, "column": column.name, "table": table_name}
        ctx = ExecutionContext(
            args=dict(first_input),
            env=self.env,
            source=f"column:{table_name}.{column.name}:{phase}",
        )
        outcome = await self.runner.run(pipeline, ctx, first_input)
        if not outcome.success:
            logger.warning(
                f"Column {phase} transform failed for {table_name}.{column.name} "
                f"at step '{outcome.failed_step}': {outcome.error}"
            )
            raise ColumnTransformError(table_name, column.name, phase, outcome.error or "failed")

        body = outcome.body
        if isinstance(body, dict):
            return body.get("value")
        return body

    def transform_sync(self, table_name: str, column: Column, phase: str, value: Any) -> Any:
        """
        Blocking variant of transform() for synchronous callers.

        Uses a private event loop; when the calling thread already runs a
        loop, the phase runs on a worker thread instead.
        """
        coro = self.transform(table_name, column, phase, value)
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            with self._loop_lock:
                if self._loop is None or self._loop.is_closed():
                    self._loop = asyncio.new_event_loop()
                return self._loop.run_until_complete(coro)

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="conduit-column") as pool:
            return pool.submit(asyncio.run, coro).result()

    def close(self) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.close()
        self._loop = None

    # -------------------------------------------------------------------------
    # Rows
    # -------------------------------------------------------------------------

    async def _apply(self, table: Table, row: dict[str, Any], phase: str) -> dict[str, Any]:
        result = dict(row)
        for name, value in row.items():
            column = table.column(name)
            if column is not None and self.has_phase(column, phase):
                result[name] = await self.transform(table.name, column, phase, value)
        return result

    async def write_row(self, table: Table, row: dict[str, Any]) -> dict[str, Any]:
        return await self._apply(table, row, "write")

    async def read_row(self, table: Table, row: dict[str, Any]) -> dict[str, Any]:
        return await self._apply(table, row, "read")

    async def args_value(self, table: Table, column_name: str, value: Any) -> Any:
        column = table.column(column_name)
        if column is None:
            return value
        return await self.transform(table.name, column, "args", value)
