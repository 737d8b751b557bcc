"""
Execution backend contract for externally-imaged steps.

The engine never runs containers itself. An ExecutionBackend receives a
BackendRequest describing one step invocation and answers with a
BackendResponse. Raw payloads travel by reference (a path to a scoped
temporary file), never inline.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class BackendRequest(BaseModel):
    """One step invocation handed to an execution backend."""

    step: str
    image: str
    fields: dict[str, Any] | None = None
    raw_path: str | None = None
    content_type: str | None = None
    timeout: float = Field(default=30.0, gt=0)
    username: str | None = None
    password: str | None = Field(default=None, repr=False)


class BackendResponse(BaseModel):
    """What an execution backend reports back for one invocation."""

    success: bool = True
    fields: dict[str, Any] | None = None
    raw: bytes | None = None
    exit_code: int = 0
    error: str | None = None

    @property
    def output(self) -> Any:
        if self.fields is not None:
            return self.fields
        return self.raw


@runtime_checkable
class ExecutionBackend(Protocol):
    """
    Runs image-based steps.

    Implementations raise ProviderInvocationError with kind TIMEOUT or
    UNREACHABLE when the runtime cannot be reached; a step that ran and
    failed is reported as BackendResponse(success=False).
    """

    async def invoke(self, request: BackendRequest) -> BackendResponse: ...

    async def close(self) -> None: ...
