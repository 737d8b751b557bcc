"""
Response selection for endpoints.

Given a pipeline outcome, picks the first response rule whose condition
holds and shapes the body with the rule's yield and mappings.

Conditions are evaluated with the outcome body as subject, so bare names
read outcome fields:

    responses:
      - status: 400
        when: success == false
      - status: 201
        yield: 0
        mappings:
          - {from: id}
          - {from: name, to: team.name}

Yield forms, applied to the outcome's sequence:
    N      the N-th element, unwrapped
    N..    elements N to the end
    ..N    elements 0 to N (exclusive)
    N..M   elements N to M (exclusive)

The sequence is the body itself when it is a list, else its `items` or
`data` list, else the body wrapped in a one-element list. Yield only shapes
what the pipeline produced; it never limits what steps fetch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from conduit.config.schemas import Endpoint, ResponseRule
from conduit.errors import NoResponseMatchedError, UnresolvedReferenceError
from conduit.pipeline.context import PipelineOutcome
from conduit.pipeline.expressions import ExpressionResolver
from conduit.pipeline.mapping import MappingApplier

logger = logging.getLogger(__name__)

SEQUENCE_KEYS = ("items", "data")


@dataclass(frozen=True)
class YieldSpec:
    """Parsed `yield` value."""

    start: int | None = None
    end: int | None = None
    single: bool = False

    @classmethod
    def parse(cls, text: str) -> "YieldSpec":
        """
        Raises:
            ValueError: If the text is not N, N.., ..N or N..M
        """
        raw = str(text).strip()
        if ".." not in raw:
            return cls(start=_bound(raw, text), single=True)
        left, _, right = raw.partition("..")
        if ".." in right:
            raise ValueError(f"Invalid yield '{text}'")
        start = _bound(left, text) if left.strip() else None
        end = _bound(right, text) if right.strip() else None
        if start is None and end is None:
            raise ValueError(f"Invalid yield '{text}': at least one bound is required")
        if start is not None and end is not None and end < start:
            raise ValueError(f"Invalid yield '{text}': end is before start")
        return cls(start=start, end=end)

    def apply(self, sequence: list[Any]) -> Any:
        if self.single:
            index = self.start or 0
            return sequence[index] if index < len(sequence) else None
        return sequence[self.start : self.end]


def _bound(part: str, text: str) -> int:
    part = part.strip()
    if not part.isdigit():
        raise ValueError(f"Invalid yield '{text}': '{part}' is not a non-negative integer")
    return int(part)


def sequence_of(body: Any) -> list[Any]:
    if isinstance(body, (list, tuple)):
        return list(body)
    if isinstance(body, dict):
        for key in SEQUENCE_KEYS:
            if isinstance(body.get(key), (list, tuple)):
                return list(body[key])
    return [body]


@dataclass
class EndpointResponse:
    status: int
    body: Any = None
    content_type: str = "application/json"
    headers: dict[str, str] = field(default_factory=dict)


class ResponseSelector:
    """
    Maps pipeline outcomes to endpoint responses.

    Example:
        selector = ResponseSelector()
        response = selector.select(endpoint, outcome)
    """

    def __init__(self, resolver: ExpressionResolver | None = None):
        self.resolver = resolver or ExpressionResolver()
        self._mappings = MappingApplier(self.resolver)

    def match(self, endpoint: Endpoint, outcome: PipelineOutcome) -> ResponseRule:
        """
        First rule whose condition is absent or true.

        Raises:
            NoResponseMatchedError: If no rule matches
        """
        for rule in endpoint.responses:
            if rule.when is None or self._holds(rule.when, outcome):
                return rule
        logger.error(
            f"Endpoint '{endpoint.name}': no response rule matched "
            f"(success={outcome.success}); check the endpoint's response configuration"
        )
        raise NoResponseMatchedError(endpoint.name, len(endpoint.responses))

    def _holds(self, condition: str, outcome: PipelineOutcome) -> bool:
        try:
            return self.resolver.evaluate_condition(
                condition, outcome.context, subject=outcome.body
            )
        except UnresolvedReferenceError as e:
            # A field the outcome does not carry cannot satisfy the condition
            logger.debug(f"Condition '{condition}' not satisfied: {e}")
            return False

    def shape(self, rule: ResponseRule, outcome: PipelineOutcome) -> Any:
        body = outcome.body
        if rule.yield_spec is not None:
            body = YieldSpec.parse(rule.yield_spec).apply(sequence_of(body))
        if rule.mappings:
            body = self._mappings.build(rule.mappings, outcome.context, body)
        return body

    def select(self, endpoint: Endpoint, outcome: PipelineOutcome) -> EndpointResponse:
        rule = self.match(endpoint, outcome)
        return EndpointResponse(
            status=rule.status,
            body=self.shape(rule, outcome),
            content_type=endpoint.produces,
        )
