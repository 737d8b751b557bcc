"""REST surface: endpoint handling and response selection."""

from .endpoints import EndpointHandler, EndpointRequest, find_endpoint, interpret_body
from .responses import EndpointResponse, ResponseSelector, YieldSpec

__all__ = [
    "EndpointHandler",
    "EndpointRequest",
    "EndpointResponse",
    "ResponseSelector",
    "YieldSpec",
    "find_endpoint",
    "interpret_body",
]
