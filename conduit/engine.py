"""
Engine façade.

Wires every component to one ConfigStore so a host process only has to
load configuration and forward requests, events and lifecycle calls:

    ConfigStore ─┬─ StepExecutor ── PipelineRunner ─┬─ EndpointHandler
                 │                                  ├─ EventRouter
                 │                                  └─ JobScheduler
                 └─ ColumnTransformPipeline ── TableStore (reference storage)

Each reload re-applies the parts of the document that components hold
outside the snapshot: global implicit steps, the document `call:` steps
resolve against, step builders, the column transform environment and the
table store's view of the schema.

Usage:
    engine = Engine()
    engine.load(["app.yaml", "schema.yaml"])
    engine.start()                       # schedules jobs; needs a running loop

    response = await engine.handle("POST", "/create_team", body=b'{"name": "x"}',
                                   content_type="application/json")
    await engine.close()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from conduit.api.endpoints import EndpointHandler, EndpointRequest, find_endpoint
from conduit.api.responses import EndpointResponse
from conduit.backends.base import ExecutionBackend
from conduit.backends.http import HttpExecutionBackend
from conduit.config.settings import EngineSettings, configure_logging, get_settings
from conduit.config.store import ConfigStore, Snapshot
from conduit.errors import ConduitError
from conduit.events.router import Event, EventRouter, Subscriber, SubscriptionHandle
from conduit.jobs.scheduler import JobScheduler
from conduit.pipeline.context import ExecutionContext, PipelineOutcome
from conduit.pipeline.executor import StepExecutor
from conduit.pipeline.observability import PipelineMetrics, get_metrics
from conduit.pipeline.runner import PipelineRunner
from conduit.pipeline.step import ProviderRegistry
from conduit.storage.columns import ColumnTransformPipeline
from conduit.storage.ids import IdGenerators
from conduit.storage.memory import TableStore

logger = logging.getLogger(__name__)


class Engine:
    """One configured Conduit runtime."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        backend: ExecutionBackend | None = None,
        metrics: PipelineMetrics | None = None,
    ):
        self.settings = settings or get_settings()
        configure_logging(self.settings)
        self.metrics = metrics or get_metrics()

        self._owns_backend = backend is None and self.settings.backend_url is not None
        if self._owns_backend:
            backend = HttpExecutionBackend(
                self.settings.backend_url, timeout=self.settings.step_timeout_seconds
            )
        self.backend = backend

        self.registry = ProviderRegistry(backend, temp_dir=self.settings.temp_dir)
        self.config = ConfigStore(self.registry)
        self.executor = StepExecutor.from_settings(
            self.registry, self.settings, metrics=self.metrics
        )
        self.runner = PipelineRunner(self.executor, metrics=self.metrics)

        self.endpoints = EndpointHandler(self.runner)
        self.events = EventRouter(self.config, self.runner, metrics=self.metrics)
        self.jobs = JobScheduler(self.config, self.runner, metrics=self.metrics)
        self.columns = ColumnTransformPipeline(self.executor, metrics=self.metrics)
        self.ids = IdGenerators(worker_id=self.settings.worker_id)
        self.tables: TableStore | None = None

        self.config.add_listener(self._on_reload)

    # =========================================================================
    # Configuration
    # =========================================================================

    def load(self, paths: Iterable[str | Path]) -> Snapshot:
        return self.config.load(paths)

    def load_dict(self, tree: dict[str, Any]) -> Snapshot:
        return self.config.load_dict(tree)

    def _on_reload(self, snapshot: Snapshot) -> None:
        document = snapshot.document
        self.runner.implicit_steps = tuple(document.apis.global_options.implicit_steps)
        self.runner.document = document
        self.executor.registry = self.registry.with_builders(document.step_builders)
        self.columns.env = document.env_map()
        if self.tables is None:
            self.tables = TableStore(
                document,
                columns=self.columns,
                ids=self.ids,
                on_event=self.events.dispatch,
            )
        else:
            self.tables.use(document)
        for warning in snapshot.warnings:
            logger.warning(f"Configuration warning: {warning}")

    # =========================================================================
    # Invocation contexts
    # =========================================================================

    async def handle(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, Any] | None = None,
        body: bytes | str | dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> EndpointResponse:
        """Route an HTTP-shaped request to its endpoint."""
        snapshot = self.config.current()
        found = find_endpoint(snapshot.document, method, path)
        if found is None:
            return EndpointResponse(
                status=404,
                body={"success": False, "error": f"No endpoint for {method.upper()} {path}"},
            )
        endpoint, path_params = found
        request = EndpointRequest(
            method=method.upper(),
            path=path,
            path_params=path_params,
            query=dict(query or {}),
            body=body,
            content_type=content_type,
        )
        return await self.endpoints.handle(
            endpoint,
            request,
            env=snapshot.document.env_map(),
            snapshot_epoch=snapshot.epoch,
        )

    async def run_pipeline(self, name: str, args: dict[str, Any] | None = None) -> PipelineOutcome:
        """
        Run a named pipeline directly.

        Raises:
            ConduitError: If no pipeline has that name
        """
        snapshot = self.config.current()
        pipeline = snapshot.document.pipeline(name)
        if pipeline is None:
            raise ConduitError(f"Unknown pipeline '{name}'")
        ctx = ExecutionContext(
            args=dict(args or {}),
            env=snapshot.document.env_map(),
            snapshot_epoch=snapshot.epoch,
            source=f"direct:{name}",
        )
        return await self.runner.run(pipeline, ctx)

    async def publish(self, event: Event) -> dict[str, PipelineOutcome]:
        return await self.events.dispatch(event)

    def subscribe(self, endpoint_name: str, subscriber: Subscriber) -> SubscriptionHandle:
        return self.events.subscribe(endpoint_name, subscriber)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        self.jobs.start()

    async def close(self) -> None:
        self.jobs.shutdown()
        await self.runner.drain(timeout=self.settings.step_timeout_seconds)
        self.columns.close()
        if self._owns_backend and self.backend is not None:
            await self.backend.close()
        logger.info("Engine closed")

    async def __aenter__(self) -> "Engine":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
