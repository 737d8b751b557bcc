"""
Endpoint handling.

Turns one HTTP-shaped request into a pipeline run and a response:

    1. interpret the body per the endpoint's `accepts`
       (JSON and form bodies are parsed, anything else stays raw)
    2. build a fresh ExecutionContext: args = body fields, then query
       parameters, then path parameters (later wins)
    3. run the endpoint's pipeline
    4. select and shape the response

The HTTP listener itself lives outside the engine; anything that can
produce an EndpointRequest can drive an endpoint.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any
from urllib.parse import parse_qs

from conduit.config.schemas import Document, Endpoint, Pipeline
from conduit.errors import ConduitError, NoResponseMatchedError
from conduit.pipeline.context import ExecutionContext, ParsedPayload, RawPayload

from .responses import EndpointResponse, ResponseSelector

if TYPE_CHECKING:
    from conduit.pipeline.runner import PipelineRunner

logger = logging.getLogger(__name__)

JSON_TYPES = ("application/json",)
FORM_TYPES = ("application/x-www-form-urlencoded",)

_PARAM = re.compile(r"\{(\w+)\}|:(\w+)")


@dataclass
class EndpointRequest:
    method: str = "GET"
    path: str = "/"
    path_params: dict[str, Any] = field(default_factory=dict)
    query: dict[str, Any] = field(default_factory=dict)
    body: bytes | str | dict[str, Any] | None = None
    content_type: str | None = None


class BadRequest(ConduitError):
    """Request body could not be interpreted as the endpoint's accepted type."""


def _media_type(value: str | None) -> str:
    return (value or "").split(";", 1)[0].strip().lower()


def _text(body: bytes | str) -> str:
    return body.decode("utf-8") if isinstance(body, bytes) else body


def interpret_body(endpoint: Endpoint, request: EndpointRequest) -> ParsedPayload | RawPayload:
    """
    Parse or wrap a request body.

    Raises:
        BadRequest: If a JSON or form body is malformed
    """
    body = request.body
    if isinstance(body, dict):
        return ParsedPayload(fields=dict(body))
    if body is None or body == b"" or body == "":
        return ParsedPayload()

    media = _media_type(request.content_type) or _media_type(endpoint.accepts)

    if media in JSON_TYPES:
        try:
            parsed = json.loads(_text(body))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BadRequest(f"Malformed JSON body: {e}") from e
        if not isinstance(parsed, dict):
            return ParsedPayload(fields={"items": parsed})
        return ParsedPayload(fields=parsed)

    if media in FORM_TYPES:
        try:
            text = _text(body)
        except UnicodeDecodeError as e:
            raise BadRequest(f"Malformed form body: {e}") from e
        fields = {k: v[0] if len(v) == 1 else v for k, v in parse_qs(text).items()}
        return ParsedPayload(fields=fields)

    data = body if isinstance(body, bytes) else body.encode("utf-8")
    return RawPayload(data=data, content_type=media or "application/octet-stream")


def _path_pattern(template: str) -> re.Pattern[str]:
    pattern = ""
    last = 0
    for m in _PARAM.finditer(template):
        pattern += re.escape(template[last : m.start()])
        pattern += f"(?P<{m.group(1) or m.group(2)}>[^/]+)"
        last = m.end()
    pattern += re.escape(template[last:])
    return re.compile(f"^{pattern.rstrip('/') or '/'}/?$")


def find_endpoint(
    document: Document, method: str, path: str
) -> tuple[Endpoint, dict[str, str]] | None:
    """Resolve a request path (under the REST base) to an endpoint and its path parameters."""
    base = document.apis.rest.base.rstrip("/")
    if base and path.startswith(base):
        path = path[len(base) :] or "/"
    for endpoint in document.apis.rest.endpoints:
        if endpoint.method.value != method.upper():
            continue
        template = endpoint.path or f"/{endpoint.name}"
        m = _path_pattern(template).match(path)
        if m:
            return endpoint, m.groupdict()
    return None


class EndpointHandler:
    """
    Runs endpoint pipelines and selects responses.

    Example:
        handler = EndpointHandler(runner)
        response = await handler.handle(endpoint, request, env=document.env_map())
    """

    def __init__(self, runner: "PipelineRunner", selector: ResponseSelector | None = None):
        self.runner = runner
        self.selector = selector or ResponseSelector(runner.executor.resolver)

    async def handle(
        self,
        endpoint: Endpoint,
        request: EndpointRequest,
        *,
        env: dict[str, str] | None = None,
        snapshot_epoch: int = 0,
    ) -> EndpointResponse:
        if not isinstance(endpoint.pipeline, Pipeline):
            raise ConduitError(f"Endpoint '{endpoint.name}' is not linked to a pipeline")

        try:
            payload = interpret_body(endpoint, request)
        except BadRequest as e:
            logger.info(f"Endpoint '{endpoint.name}': {e}")
            return EndpointResponse(
                status=400,
                body={"success": False, "error": str(e)},
                content_type="application/json",
            )

        args: dict[str, Any] = {}
        if isinstance(payload, ParsedPayload):
            args.update(payload.fields)
        args.update(request.query)
        args.update(request.path_params)

        ctx = ExecutionContext(
            args=args,
            env=dict(env or {}),
            snapshot_epoch=snapshot_epoch,
            source=f"endpoint:{endpoint.name}",
        )
        outcome = await self.runner.run(endpoint.pipeline, ctx, payload)

        try:
            return self.selector.select(endpoint, outcome)
        except NoResponseMatchedError as e:
            return EndpointResponse(
                status=500,
                body={"success": False, "error": str(e)},
                content_type="application/json",
            )
        except ConduitError as e:
            logger.error(f"Endpoint '{endpoint.name}': response shaping failed: {e}")
            return EndpointResponse(
                status=500,
                body={"success": False, "error": str(e)},
                content_type="application/json",
            )
