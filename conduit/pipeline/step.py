"""
Step providers for Conduit.

A provider is whatever actually produces a step's output. Every provider
variant sits behind the same narrow interface, so the executor never
branches on provider kind:

    BuiltinProvider   in-process callable, sync or async
    ImageProvider     delegates to an ExecutionBackend (container runtime)
    PipelineProvider  runs a nested or called pipeline through the runner

ProviderRegistry maps a parsed ProviderRef to a provider instance.

Usage:
    registry = ProviderRegistry(backend=HttpExecutionBackend(url))
    registry.register("slugify", slugify)

    provider = registry.resolve(step.provider, step_name=step.name)
    output = await provider.invoke(payload, ctx)
"""

from __future__ import annotations

import inspect
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable

from conduit.config.schemas import ProviderKind, ProviderRef, StepBuilder
from conduit.errors import ProviderInvocationError

from .builtins import BUILTINS
from .context import ParsedPayload, RawPayload

if TYPE_CHECKING:
    from conduit.backends.base import ExecutionBackend
    from conduit.config.schemas import Pipeline

    from .context import ExecutionContext
    from .runner import PipelineRunner

logger = logging.getLogger(__name__)

BuiltinFunc = Callable[[Any, "ExecutionContext"], Any]


class StepProvider(ABC):
    """Base class for step providers."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def invoke(self, payload: Any, ctx: "ExecutionContext") -> Any:
        """
        Produce the step output for an input payload.

        Raises:
            ProviderInvocationError: If the provider cannot produce an output
        """
        ...


class BuiltinProvider(StepProvider):
    """In-process provider wrapping a plain or async callable."""

    def __init__(self, name: str, func: BuiltinFunc):
        self._name = name
        self._func = func

    @property
    def name(self) -> str:
        return f"builtin:{self._name}"

    async def invoke(self, payload: Any, ctx: "ExecutionContext") -> Any:
        if isinstance(payload, ParsedPayload):
            payload = dict(payload.fields)
        result = self._func(payload, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result


class ImageProvider(StepProvider):
    """
    Provider backed by an external execution backend.

    Structured input travels as JSON fields. Raw input is written to a
    temporary file that exists only for the duration of the call; the
    backend receives its path.
    """

    def __init__(
        self,
        step_name: str,
        ref: ProviderRef,
        backend: "ExecutionBackend",
        *,
        timeout: float = 30.0,
        temp_dir: str | None = None,
        builder: StepBuilder | None = None,
    ):
        self.step_name = step_name
        self.ref = ref
        self.backend = backend
        self.timeout = timeout
        self.temp_dir = temp_dir
        self.builder = builder

    @property
    def name(self) -> str:
        return str(self.ref)

    @property
    def image(self) -> str:
        if self.ref.kind == ProviderKind.IMAGE:
            return f"{self.ref.image}:{self.ref.tag}" if self.ref.tag else self.ref.image
        return str(self.ref)

    def _credentials(self) -> tuple[str | None, str | None]:
        ref = self.builder.image if self.builder else self.ref
        password = ref.password.get_secret_value() if ref.password else None
        return ref.username, password

    async def invoke(self, payload: Any, ctx: "ExecutionContext") -> Any:
        from conduit.backends.base import BackendRequest

        username, password = self._credentials()
        common = {
            "step": self.step_name,
            "image": self.image,
            "timeout": self.timeout,
            "username": username,
            "password": password,
        }

        if isinstance(payload, RawPayload):
            with self._handoff(payload) as path:
                request = BackendRequest(
                    raw_path=path, content_type=payload.content_type, **common
                )
                response = await self.backend.invoke(request)
        else:
            if isinstance(payload, ParsedPayload):
                fields = dict(payload.fields)
            elif isinstance(payload, dict):
                fields = payload
            else:
                fields = {"value": payload}
            response = await self.backend.invoke(BackendRequest(fields=fields, **common))

        if not response.success:
            raise ProviderInvocationError(
                self.step_name,
                response.error or f"step exited with code {response.exit_code}",
                exit_code=response.exit_code,
                output=response.fields,
            )

        if response.fields is None and response.raw is not None:
            return RawPayload(data=response.raw)
        return response.fields if response.fields is not None else {}

    @contextmanager
    def _handoff(self, payload: RawPayload) -> Iterator[str]:
        fd, path = tempfile.mkstemp(prefix=f"conduit-{self.step_name}-", dir=self.temp_dir)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload.data)
            yield path
        finally:
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass


class PipelineProvider(StepProvider):
    """
    Runs a whole pipeline as one step, through the same runner.

    The nested run gets a forked context: it shares env and epoch with the
    caller but records its own step outputs. `call:` targets see the mapped
    step input as their args, the way an endpoint sees its request body;
    nested `pipeline:` steps keep the caller's args. A failed nested run
    fails the step, carrying the nested outcome's fields as output.
    """

    def __init__(
        self,
        step_name: str,
        ref: ProviderRef,
        pipeline: "Pipeline",
        runner: "PipelineRunner",
    ):
        self.step_name = step_name
        self.ref = ref
        self.pipeline = pipeline
        self.runner = runner

    @property
    def name(self) -> str:
        return str(self.ref)

    async def invoke(self, payload: Any, ctx: "ExecutionContext") -> Any:
        child = ctx.fork(source=f"{ctx.source}>{self.pipeline.name}")
        if self.ref.kind == ProviderKind.CALL:
            if isinstance(payload, ParsedPayload):
                child.args = dict(payload.fields)
            elif isinstance(payload, dict):
                child.args = dict(payload)

        outcome = await self.runner.run(self.pipeline, child, payload)
        if not outcome.success:
            body = outcome.body if isinstance(outcome.body, dict) else {}
            output = {k: v for k, v in body.items() if k not in _OUTCOME_KEYS}
            output["nested_step"] = outcome.failed_step
            raise ProviderInvocationError(
                self.step_name, f"{self.pipeline.name}: {outcome.error}", output=output
            )
        return outcome.body


_OUTCOME_KEYS = frozenset({"success", "step", "error", "error_type", "error_kind"})


class ProviderRegistry:
    """
    Resolves provider references to provider instances.

    Built-in names come pre-registered; applications add their own with
    register(). Image, Dockerfile and custom-builder references all go to
    the configured execution backend.
    """

    def __init__(
        self,
        backend: "ExecutionBackend | None" = None,
        *,
        temp_dir: str | None = None,
        step_builders: tuple[StepBuilder, ...] = (),
        include_defaults: bool = True,
    ):
        self.backend = backend
        self.temp_dir = temp_dir
        self._builtins: dict[str, BuiltinFunc] = dict(BUILTINS) if include_defaults else {}
        self._builders = {b.name: b for b in step_builders}

    def register(self, name: str, func: BuiltinFunc) -> None:
        self._builtins[name] = func
        logger.debug(f"Registered builtin provider: {name}")

    def unregister(self, name: str) -> None:
        self._builtins.pop(name, None)

    def has_builtin(self, name: str) -> bool:
        return name in self._builtins

    @property
    def builtin_names(self) -> list[str]:
        return sorted(self._builtins)

    def with_builders(self, step_builders: tuple[StepBuilder, ...]) -> "ProviderRegistry":
        """Copy of this registry that knows the given step builders."""
        clone = ProviderRegistry(
            self.backend,
            temp_dir=self.temp_dir,
            step_builders=step_builders,
            include_defaults=False,
        )
        clone._builtins = dict(self._builtins)
        return clone

    def resolve(
        self,
        ref: ProviderRef,
        *,
        step_name: str,
        timeout: float = 30.0,
    ) -> StepProvider:
        """
        Get the provider for a reference.

        Raises:
            ProviderInvocationError: If the reference cannot be served
        """
        if ref.kind == ProviderKind.BUILTIN:
            func = self._builtins.get(ref.name)
            if func is None:
                raise ProviderInvocationError(step_name, f"Unknown builtin provider '{ref.name}'")
            return BuiltinProvider(ref.name, func)

        if ref.is_nested:
            raise ProviderInvocationError(
                step_name, f"{ref} steps only run inside a pipeline runner"
            )

        if self.backend is None:
            raise ProviderInvocationError.unreachable(
                step_name, f"no execution backend configured for {ref}"
            )

        builder = None
        if ref.kind == ProviderKind.CUSTOM:
            builder = self._builders.get(ref.name)
            if builder is None:
                raise ProviderInvocationError(step_name, f"Unknown step builder '{ref.name}'")

        return ImageProvider(
            step_name,
            ref,
            self.backend,
            timeout=timeout,
            temp_dir=self.temp_dir,
            builder=builder,
        )
