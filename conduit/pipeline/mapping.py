"""
Mapping application: building a step's input from the execution context.

A step without mappings receives the prior value unchanged. A step with
mappings receives only the mapped fields, each placed at its (possibly
dotted) target path. A mapping with children builds a nested object under
its target; when the parent source resolves to a list, the children are
applied to every element.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable

from conduit.config.schemas import ColumnType, Mapping

from .context import ParsedPayload

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .expressions import ExpressionResolver


def assign_path(target: dict[str, Any], path: str, value: Any) -> None:
    """Set `value` at a dotted path, creating intermediate dicts."""
    parts = [p for p in path.split(".") if p]
    if not parts:
        raise ValueError(f"Invalid mapping target '{path}'")
    node = target
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def coerce(value: Any, hint: ColumnType) -> Any:
    """Convert a resolved value to the column type named by a mapping hint."""
    if value is None:
        return None
    if hint == ColumnType.TEXT:
        return value if isinstance(value, str) else str(value)
    if hint in (ColumnType.INT, ColumnType.BIGINT):
        return int(value)
    if hint in (ColumnType.FLOAT, ColumnType.DOUBLE):
        return float(value)
    if hint == ColumnType.BOOL:
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no", ""):
                return False
            raise ValueError(f"Cannot interpret '{value}' as boolean")
        return bool(value)
    if hint == ColumnType.TIMESTAMP:
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))
    if hint == ColumnType.BYTEA:
        return value if isinstance(value, bytes) else str(value).encode("utf-8")
    return value


def subject_of(previous: Any) -> Any:
    if isinstance(previous, ParsedPayload):
        return previous.fields
    return previous


class MappingApplier:
    """Resolves a step's mappings into its input payload."""

    def __init__(self, resolver: "ExpressionResolver"):
        self.resolver = resolver

    def build(
        self,
        mappings: Iterable[Mapping],
        ctx: "ExecutionContext",
        previous: Any,
    ) -> Any:
        mappings = tuple(mappings)
        if not mappings:
            return previous
        return self._build_object(mappings, ctx, subject_of(previous))

    def _build_object(
        self,
        mappings: tuple[Mapping, ...],
        ctx: "ExecutionContext",
        subject: Any,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for mapping in mappings:
            assign_path(fields, mapping.target_path, self._resolve(mapping, ctx, subject))
        return fields

    def _resolve(self, mapping: Mapping, ctx: "ExecutionContext", subject: Any) -> Any:
        value = self.resolver.resolve(mapping.source, ctx, subject)
        if mapping.children:
            if isinstance(value, (list, tuple)):
                return [self._build_object(mapping.children, ctx, item) for item in value]
            return self._build_object(mapping.children, ctx, value)
        if mapping.type is not None:
            value = coerce(value, mapping.type)
        return value
