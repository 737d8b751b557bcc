"""Execution backends for image-based steps."""

from .base import BackendRequest, BackendResponse, ExecutionBackend
from .http import HttpExecutionBackend

__all__ = [
    "BackendRequest",
    "BackendResponse",
    "ExecutionBackend",
    "HttpExecutionBackend",
]
