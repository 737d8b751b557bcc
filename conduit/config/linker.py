"""
Document linker for Conduit.

Second assembly phase. The loader validates each node in isolation; the
linker checks everything that needs the whole tree:

- names unique per scope (columns, tables, steps, pipelines, endpoints,
  subscriptions, jobs)
- foreign keys resolve to an existing table and column, wherever in the
  assembled document that table was declared
- endpoints and subscriptions naming a pipeline get the Pipeline itself
- jobs and crud_tables name things that exist
- every mapping source and response condition parses, and a mapping only
  references steps declared before its own step
- response yields parse
- builtin providers exist, when a registry is supplied
- step names avoid the reserved expression roots (args, env, pipeline),
  and global implicit steps do not reuse a pipeline step's name
- `pipeline:` and `call:` targets exist and never lead back to the
  pipeline that started the call; no mapping reads an async step's output

Every issue is collected before raising, so one reload reports all of them.
An endpoint without an unconditional response rule is a warning only.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from conduit.api.responses import YieldSpec
from conduit.errors import ConfigValidationError, ExpressionSyntaxError
from conduit.jobs.intervals import parse_frequency
from conduit.pipeline.expressions import RESERVED_ROOTS, compile_expression

from .schemas import (
    Apis,
    ConstraintKind,
    Document,
    Endpoint,
    GlobalOptions,
    Mapping,
    Pipeline,
    ProviderKind,
    Step,
    SubscriptionEndpoint,
)

if TYPE_CHECKING:
    from conduit.pipeline.step import ProviderRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LinkResult:
    document: Document
    warnings: tuple[str, ...] = ()


@dataclass
class _Issues:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def duplicates(self, names: Iterable[str], what: str, scope: str) -> None:
        for name, count in Counter(names).items():
            if count > 1:
                self.errors.append(f"Duplicate {what} '{name}' in {scope}")


class Linker:
    """
    Validates and resolves an assembled Document.

    Example:
        result = Linker(registry).link(load_document(["app.yaml"]))
        for warning in result.warnings:
            logger.warning(warning)
    """

    def __init__(self, registry: "ProviderRegistry | None" = None):
        self.registry = registry

    def link(self, document: Document) -> LinkResult:
        """
        Raises:
            ConfigValidationError: Listing every issue found
        """
        issues = _Issues()

        self._check_tables(document, issues)
        pipelines = self._check_pipelines(document, issues)
        endpoints = self._link_endpoints(document.apis.rest.endpoints, pipelines, issues)
        subscriptions = self._link_subscriptions(document.apis.websockets, pipelines, issues)
        self._check_jobs(document, pipelines, issues)
        self._check_global_options(document, issues)

        if issues.errors:
            for error in issues.errors:
                logger.debug(f"Link error: {error}")
            raise ConfigValidationError(issues.errors)

        for warning in issues.warnings:
            logger.warning(warning)

        apis: Apis = document.apis.model_copy(
            update={
                "rest": document.apis.rest.model_copy(update={"endpoints": endpoints}),
                "websockets": subscriptions,
            }
        )
        return LinkResult(
            document=document.model_copy(update={"apis": apis}),
            warnings=tuple(issues.warnings),
        )

    # -------------------------------------------------------------------------
    # Tables
    # -------------------------------------------------------------------------

    def _check_tables(self, document: Document, issues: _Issues) -> None:
        columns_by_table: dict[str, set[str]] = {}
        for db in document.databases:
            for schema in db.schemas:
                issues.duplicates(
                    (t.name for t in schema.tables), "table", f"schema '{db.name}.{schema.name}'"
                )
                for table in schema.tables:
                    columns_by_table[table.name] = set(table.column_names)

        for _, _, table in document.iter_tables():
            issues.duplicates(table.column_names, "column", f"table '{table.name}'")
            if len(table.primary_key) > 1:
                issues.errors.append(f"Table '{table.name}' declares more than one primary key")

            for column in table.columns:
                if column.pipeline is None:
                    continue
                for phase in ("args", "write", "read"):
                    steps = column.pipeline.phase(phase)
                    scope = f"column '{table.name}.{column.name}' {phase} pipeline"
                    issues.duplicates((s.name for s in steps), "step", scope)
                    for index, step in enumerate(steps):
                        self._check_step(step, [s.name for s in steps], index, scope, issues)
                        if step.provider.is_nested or step.is_async:
                            issues.errors.append(
                                f"step '{step.name}' in {scope}: column transforms cannot "
                                f"be async or run pipeline/call steps"
                            )

            for constraint in table.constraints:
                where = f"constraint '{constraint.name}' on table '{table.name}'"
                for col in constraint.columns:
                    if col not in columns_by_table[table.name]:
                        issues.errors.append(f"{where} names unknown column '{col}'")
                if constraint.kind != ConstraintKind.FOREIGN_KEY:
                    continue
                if not constraint.mappings:
                    issues.errors.append(f"{where} is a foreign key without mappings")
                for local, target_table, target_column in constraint.references():
                    if local not in columns_by_table[table.name]:
                        issues.errors.append(f"{where} maps unknown local column '{local}'")
                    if not target_table or not target_column:
                        issues.errors.append(
                            f"{where} target '{target_table}.{target_column}' must be table.column"
                        )
                    elif target_table not in columns_by_table:
                        issues.errors.append(f"{where} references unknown table '{target_table}'")
                    elif target_column not in columns_by_table[target_table]:
                        issues.errors.append(
                            f"{where} references unknown column '{target_table}.{target_column}'"
                        )

    # -------------------------------------------------------------------------
    # Pipelines and steps
    # -------------------------------------------------------------------------

    def _all_pipelines(self, document: Document) -> list[tuple[Pipeline, str]]:
        found: list[tuple[Pipeline, str]] = [(p, "pipelines") for p in document.apis.pipelines]
        for ep in document.apis.rest.endpoints:
            if isinstance(ep.pipeline, Pipeline):
                found.append((ep.pipeline, f"endpoint '{ep.name}'"))
        for ws in document.apis.websockets:
            if isinstance(ws.pipeline, Pipeline):
                found.append((ws.pipeline, f"subscription '{ws.name}'"))
        return found

    def _check_pipelines(self, document: Document, issues: _Issues) -> dict[str, Pipeline]:
        found = self._all_pipelines(document)
        issues.duplicates((p.name for p, _ in found), "pipeline", "document")

        for pipeline, _ in found:
            self._check_pipeline(pipeline, f"pipeline '{pipeline.name}'", document, issues)

        pipelines = {p.name: p for p, _ in found}
        self._check_call_cycles(document, pipelines, issues)
        return pipelines

    def _check_pipeline(
        self,
        pipeline: Pipeline,
        scope: str,
        document: Document,
        issues: _Issues,
    ) -> None:
        names = pipeline.step_names
        if pipeline.interpreter is not None:
            names = [pipeline.interpreter.name, *names]
            self._check_step(pipeline.interpreter, names, 0, scope, issues, document=document)
            if pipeline.interpreter.is_async:
                issues.errors.append(
                    f"interpreter '{pipeline.interpreter.name}' in {scope} cannot be async"
                )
        issues.duplicates(names, "step", scope)
        offset = 1 if pipeline.interpreter is not None else 0
        detached = pipeline.async_step_names
        for index, step in enumerate(pipeline.steps):
            self._check_step(
                step, names, index + offset, scope, issues, document=document, detached=detached
            )

    def _check_step(
        self,
        step: Step,
        names: list[str],
        index: int,
        scope: str,
        issues: _Issues,
        *,
        document: Document | None = None,
        detached: Iterable[str] = (),
    ) -> None:
        where = f"step '{step.name}' in {scope}"
        if step.name in RESERVED_ROOTS:
            issues.errors.append(
                f"{where} uses reserved name '{step.name}' "
                f"(reserved: {', '.join(RESERVED_ROOTS)})"
            )
        if (
            self.registry is not None
            and step.provider.is_builtin
            and not self.registry.has_builtin(step.provider.name)
        ):
            issues.errors.append(f"{where} uses unknown builtin provider '{step.provider.name}'")
        if document is not None and step.provider.is_nested:
            self._check_target(step, where, document, issues)
        self._check_mappings(step.mappings, names, index, where, issues, detached=detached)

    def _check_target(self, step: Step, where: str, document: Document, issues: _Issues) -> None:
        if step.pipeline is not None:
            self._check_pipeline(step.pipeline, f"nested pipeline of {where}", document, issues)
            return
        ref = step.provider
        if ref.kind == ProviderKind.CALL:
            known = document.pipeline(ref.name) or document.endpoint(ref.name)
            if known is None:
                issues.errors.append(f"{where} calls unknown endpoint or pipeline '{ref.name}'")
        elif document.pipeline(ref.name) is None:
            issues.errors.append(f"{where} references unknown pipeline '{ref.name}'")

    def _check_call_cycles(
        self,
        document: Document,
        pipelines: dict[str, Pipeline],
        issues: _Issues,
    ) -> None:
        """A pipeline that reaches itself through pipeline/call steps would never finish."""
        graph = {name: sorted(_called_pipelines(p, document)) for name, p in pipelines.items()}
        done: set[str] = set()

        def visit(name: str, path: list[str]) -> None:
            if name in path:
                cycle = " -> ".join([*path[path.index(name) :], name])
                issues.errors.append(f"Pipeline '{name}' calls itself: {cycle}")
                return
            if name in done:
                return
            for callee in graph.get(name, ()):
                visit(callee, [*path, name])
            done.add(name)

        for name in graph:
            visit(name, [])

    def _check_mappings(
        self,
        mappings: Iterable[Mapping],
        names: list[str],
        index: int,
        where: str,
        issues: _Issues,
        *,
        detached: Iterable[str] = (),
    ) -> None:
        later = set(names[index:])
        detached = set(detached)
        for mapping in mappings:
            try:
                compiled = compile_expression(mapping.source)
            except ExpressionSyntaxError as e:
                issues.errors.append(f"{where}: {e}")
                continue
            if not mapping.target_path:
                issues.errors.append(f"{where}: mapping from '{mapping.source}' has no target")
            for ref in compiled.references():
                if ref.root in RESERVED_ROOTS:
                    continue
                if ref.root in later:
                    issues.errors.append(
                        f"{where}: '{mapping.source}' references step '{ref.root}' "
                        f"which has not run yet"
                    )
                elif ref.root in detached:
                    issues.errors.append(
                        f"{where}: '{mapping.source}' references async step '{ref.root}' "
                        f"whose output is never awaited"
                    )
            if mapping.children:
                self._check_mappings(
                    mapping.children, names, index, where, issues, detached=detached
                )

    # -------------------------------------------------------------------------
    # Surfaces
    # -------------------------------------------------------------------------

    def _resolve_pipeline(
        self,
        ref: Pipeline | str,
        pipelines: dict[str, Pipeline],
        where: str,
        issues: _Issues,
    ) -> Pipeline | str:
        if isinstance(ref, Pipeline):
            return ref
        pipeline = pipelines.get(ref)
        if pipeline is None:
            issues.errors.append(f"{where} references unknown pipeline '{ref}'")
            return ref
        return pipeline

    def _link_endpoints(
        self,
        endpoints: tuple[Endpoint, ...],
        pipelines: dict[str, Pipeline],
        issues: _Issues,
    ) -> tuple[Endpoint, ...]:
        issues.duplicates((e.name for e in endpoints), "endpoint", "rest api")
        linked = []
        for ep in endpoints:
            where = f"endpoint '{ep.name}'"
            pipeline = self._resolve_pipeline(ep.pipeline, pipelines, where, issues)
            for rule in ep.responses:
                rule_where = f"{where} response {rule.status}"
                if rule.when is not None:
                    try:
                        compile_expression(rule.when)
                    except ExpressionSyntaxError as e:
                        issues.errors.append(f"{rule_where}: {e}")
                if rule.yield_spec is not None:
                    try:
                        YieldSpec.parse(rule.yield_spec)
                    except ValueError as e:
                        issues.errors.append(f"{rule_where}: {e}")
                self._check_mappings(rule.mappings, [], 0, rule_where, issues)
            if not ep.has_fallback:
                issues.warnings.append(
                    f"Endpoint '{ep.name}' has no unconditional response rule; "
                    f"unmatched outcomes will produce a server error"
                )
            linked.append(ep.model_copy(update={"pipeline": pipeline}))
        return tuple(linked)

    def _link_subscriptions(
        self,
        subscriptions: tuple[SubscriptionEndpoint, ...],
        pipelines: dict[str, Pipeline],
        issues: _Issues,
    ) -> tuple[SubscriptionEndpoint, ...]:
        issues.duplicates((s.name for s in subscriptions), "subscription", "websockets")
        linked = []
        for ws in subscriptions:
            where = f"subscription '{ws.name}'"
            if not ws.sources:
                issues.warnings.append(f"Subscription '{ws.name}' has no sources")
            pipeline = self._resolve_pipeline(ws.pipeline, pipelines, where, issues)
            linked.append(ws.model_copy(update={"pipeline": pipeline}))
        return tuple(linked)

    def _check_jobs(
        self,
        document: Document,
        pipelines: dict[str, Pipeline],
        issues: _Issues,
    ) -> None:
        issues.duplicates((j.name for j in document.apis.jobs), "job", "document")
        for job in document.apis.jobs:
            if job.pipeline not in pipelines:
                issues.errors.append(
                    f"Job '{job.name}' references unknown pipeline '{job.pipeline}'"
                )
            if job.end is not None and job.end < job.start:
                issues.errors.append(f"Job '{job.name}' ends before it starts")
            try:
                parse_frequency(job.frequency, job.interval)
            except ValueError as e:
                issues.errors.append(f"Job '{job.name}': {e}")

    def _check_global_options(self, document: Document, issues: _Issues) -> None:
        options: GlobalOptions = document.apis.global_options
        table_names = {t.name for _, _, t in document.iter_tables()}
        for name in options.crud_tables:
            if name not in table_names:
                issues.errors.append(f"crud_tables names unknown table '{name}'")

        issues.duplicates(
            (s.name for s in options.implicit_steps), "implicit step", "global options"
        )
        declared: set[str] = set()
        for pipeline, _ in self._all_pipelines(document):
            declared.update(s.name for s in _nested_steps(pipeline))
            if pipeline.interpreter is not None:
                declared.add(pipeline.interpreter.name)
        for step in options.implicit_steps:
            if step.before is None and step.after is None:
                issues.errors.append(
                    f"Implicit step '{step.name}' must declare before or after (first/each/last)"
                )
            if step.name in declared:
                issues.errors.append(
                    f"Implicit step '{step.name}' has the same name as a pipeline step"
                )
            if step.is_async:
                issues.errors.append(f"Implicit step '{step.name}' cannot be async")
            self._check_step(step, [], 0, "global options", issues, document=document)


def _nested_steps(pipeline: Pipeline) -> Iterator[Step]:
    """Every step of a pipeline, including those of inline nested pipelines."""
    for step in pipeline.steps:
        yield step
        if step.pipeline is not None:
            yield from _nested_steps(step.pipeline)


def _called_pipelines(pipeline: Pipeline, document: Document) -> set[str]:
    """Names of the document pipelines a run of `pipeline` may enter."""
    called: set[str] = set()
    for step in _nested_steps(pipeline):
        ref = step.provider
        if not ref.is_nested or step.pipeline is not None:
            continue
        if ref.kind == ProviderKind.CALL and document.pipeline(ref.name) is None:
            ep = document.endpoint(ref.name)
            if ep is not None:
                called.add(ep.pipeline.name if isinstance(ep.pipeline, Pipeline) else ep.pipeline)
            continue
        called.add(ref.name)
    return called


def link(document: Document, registry: "ProviderRegistry | None" = None) -> LinkResult:
    return Linker(registry).link(document)


__all__ = ["LinkResult", "Linker", "link"]
