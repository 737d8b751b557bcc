"""
Configuration Schemas for Conduit.

Immutable pydantic models for the assembled application document:
databases, tables, columns, constraints, pipelines, endpoints,
subscriptions and jobs.

Models are frozen and collections are tuples, so a Document snapshot can be
shared by any number of concurrent executions without copying. A reload
builds a brand-new Document; nothing here is ever mutated in place.

Cross references (an endpoint naming a pipeline, a job naming a pipeline, a
foreign key naming a table in another fragment) are kept as plain strings
at parse time and resolved by conduit.config.linker once the whole tree
has been assembled.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return value


# =============================================================================
# Enumerations
# =============================================================================


class ColumnType(str, Enum):
    TEXT = "text"
    INT = "int"
    BIGINT = "bigint"
    FLOAT = "float"
    DOUBLE = "double"
    TIMESTAMP = "timestamp"
    BOOL = "boolean"
    BYTEA = "bytea"


class ColumnDefault(str, Enum):
    """Default-generation policy for a column."""

    NONE = "none"
    UNIQUE_TEXT_ULID = "unique_text_ulid"
    UNIQUE_TEXT_SQID = "unique_text_sqid"
    UNIQUE_BIGINT_SNOWFLAKE = "unique_bigint_snowflake"


class DatabaseType(str, Enum):
    MEKADB = "mekadb"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    MARIADB = "mariadb"
    ORACLE = "oracle"
    MSSQL = "mssql"


class ConstraintKind(str, Enum):
    FOREIGN_KEY = "foreign_key"
    UNIQUE = "unique"


class ConstraintAction(str, Enum):
    CASCADE = "cascade"
    RESTRICT = "restrict"


class WellKnownType(str, Enum):
    ACCOUNT = "account"
    FILE = "file"
    PERMISSION = "permission"
    ROLE = "role"


class CoreApi(str, Enum):
    REGISTER = "register"
    LOGIN_BY_EMAIL = "login-by-email"
    LOGIN_BY_USERNAME = "login-by-username"
    OAUTH = "oauth"
    PASSWORD_RESET_TRIGGER = "password-reset-trigger"
    PASSWORD_RESET = "password-reset"
    VERIFY_ACCOUNT = "verify-account"
    MAGIC_LINK = "magic-link"
    TWO_FACTOR_EMAIL = "2fa-email"
    TWO_FACTOR_SMS = "2fa-sms"
    TWO_FACTOR_STEP2 = "2fa-step2"
    TWO_FACTOR_TOTP = "2fa-totp"


class HttpMethod(str, Enum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class IntervalUnit(str, Enum):
    MINUTE = "minute"
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    MONTH_START = "month_start"
    MONTH_END = "month_end"
    YEAR = "year"
    YEAR_START = "year_start"
    YEAR_END = "year_end"


class ImplicitPosition(str, Enum):
    """Where a global implicit step is placed relative to explicit steps."""

    FIRST = "first"
    EACH = "each"
    LAST = "last"


class ProviderKind(str, Enum):
    BUILTIN = "builtin"
    IMAGE = "image"
    DOCKERFILE = "dockerfile"
    CUSTOM = "custom"
    PIPELINE = "pipeline"
    CALL = "call"


def _lower(value: Any) -> Any:
    return value.lower() if isinstance(value, str) else value


# =============================================================================
# Steps and mappings
# =============================================================================


class ProviderRef(_Frozen):
    """
    Parsed step provider reference.

    Accepted forms:
        builtin:sha256              in-process provider
        sha256                      bare name, same as builtin:sha256
        docker:image:tag            externally-imaged provider
        docker:user:pass@image:tag  image in a private registry
        file:path/to/Dockerfile     image built from a Dockerfile
        builder:path/to/src         image built by a named step builder
        pipeline:name               runs another pipeline as one step
        call:target                 runs an endpoint's or pipeline's steps
    """

    kind: ProviderKind
    name: str = ""
    image: str = ""
    tag: str | None = None
    username: str | None = None
    password: SecretStr | None = None
    path: str = ""

    @classmethod
    def parse(cls, value: str) -> "ProviderRef":
        raw = value.strip()
        lowered = raw.lower()
        if not raw:
            raise ValueError("Step provider cannot be empty")
        if lowered.startswith("builtin:"):
            return cls(kind=ProviderKind.BUILTIN, name=raw.split(":", 1)[1])
        if lowered.startswith("docker:"):
            return cls._parse_image(raw.split(":", 1)[1])
        if lowered.endswith("dockerfile"):
            if not lowered.startswith("file:"):
                raise ValueError(
                    f"Unable to parse '{value}' as a Dockerfile source, "
                    "expected file:path/Dockerfile"
                )
            return cls(kind=ProviderKind.DOCKERFILE, path=raw[len("file:") : -len("dockerfile")])
        for kind in (ProviderKind.PIPELINE, ProviderKind.CALL):
            if lowered.startswith(f"{kind.value}:"):
                target = raw.split(":", 1)[1].strip()
                if not target:
                    raise ValueError(f"Provider '{value}' names no {kind.value} target")
                return cls(kind=kind, name=target)
        if ":" in raw:
            builder, _, path = raw.partition(":")
            return cls(kind=ProviderKind.CUSTOM, name=builder, path=path.rsplit(":", 1)[-1])
        return cls(kind=ProviderKind.BUILTIN, name=raw)

    @classmethod
    def _parse_image(cls, value: str) -> "ProviderRef":
        username = password = None
        if "@" in value:
            credentials, _, value = value.partition("@")
            username, sep, secret = credentials.partition(":")
            if not sep or not username or not value:
                raise ValueError("Provider with @ must be in the form user:pass@image:tag")
            password = SecretStr(secret)
        image, sep, tag = value.rpartition(":")
        # A colon inside a registry host (host:port/image) is not a tag separator
        if not sep or "/" in tag:
            image, tag = value, None
        return cls(
            kind=ProviderKind.IMAGE,
            image=image,
            tag=tag,
            username=username,
            password=password,
        )

    @property
    def is_builtin(self) -> bool:
        return self.kind == ProviderKind.BUILTIN

    @property
    def is_nested(self) -> bool:
        """True when the step re-enters the runner instead of calling out."""
        return self.kind in (ProviderKind.PIPELINE, ProviderKind.CALL)

    def __str__(self) -> str:
        if self.kind in (ProviderKind.BUILTIN, ProviderKind.PIPELINE, ProviderKind.CALL):
            return f"{self.kind.value}:{self.name}"
        if self.kind == ProviderKind.IMAGE:
            return f"docker:{self.image}" + (f":{self.tag}" if self.tag else "")
        if self.kind == ProviderKind.DOCKERFILE:
            return f"file:{self.path}Dockerfile"
        return f"{self.name}:{self.path}"


class Mapping(_Frozen):
    """
    Binding from a source expression to a target field path.

    `to` defaults to the last segment of `from` when omitted. Child mappings
    build a nested object under `to`, each child resolved independently.
    """

    source: str = Field(..., alias="from", description="Source expression")
    target: str | None = Field(default=None, alias="to", description="Dotted target path")
    type: ColumnType | None = None
    children: tuple["Mapping", ...] = ()

    _normalize_type = field_validator("type", mode="before")(_lower)

    @property
    def target_path(self) -> str:
        if self.target:
            return self.target
        tail = self.source.strip()
        if tail.startswith("${") and tail.endswith("}"):
            tail = tail[2:-1]
        return tail.replace("[", ".").replace("]", "").split(".")[-1].strip()


class Step(_Frozen):
    """
    A unit of work bound to a provider and an optional set of mappings.

    Besides `provider`, a step may be written as

        call: create_team            run an endpoint's (or pipeline's) steps
        pipeline: audit              run a named pipeline
        pipeline: [trim, sha256]     run an inline pipeline

    which become `call:` and `pipeline:` provider references. An inline
    pipeline is kept on the step and named after it. `async: true` starts
    the step without waiting for it; its output never reaches later steps.
    """

    name: str
    provider: ProviderRef
    pipeline: Pipeline | None = None
    mappings: tuple[Mapping, ...] = ()
    timeout_seconds: float | None = Field(default=None, gt=0)
    before: ImplicitPosition | None = None
    after: ImplicitPosition | None = None
    is_async: bool = Field(default=False, alias="async")

    @model_validator(mode="before")
    @classmethod
    def _target_as_provider(cls, data: Any) -> Any:
        if not isinstance(data, dict) or ("call" not in data and "pipeline" not in data):
            return data
        name = data.get("name", "")
        if "provider" in data:
            raise ValueError(f"Step '{name}' declares a provider and a call/pipeline target")
        if "call" in data:
            if "pipeline" in data:
                raise ValueError(f"Step '{name}' declares both call and pipeline")
            rest = {k: v for k, v in data.items() if k != "call"}
            return {**rest, "provider": f"call:{data['call']}"}

        nested = data["pipeline"]
        if isinstance(nested, str):
            rest = {k: v for k, v in data.items() if k != "pipeline"}
            return {**rest, "provider": f"pipeline:{nested}"}
        if isinstance(nested, (list, tuple)):
            nested = {"steps": nested}
        if isinstance(nested, dict):
            nested = {"name": name, **nested}
            return {**data, "pipeline": nested, "provider": f"pipeline:{nested['name']}"}
        if isinstance(nested, Pipeline):
            return {**data, "provider": f"pipeline:{nested.name}"}
        return data

    @field_validator("provider", mode="before")
    @classmethod
    def _parse_provider(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ProviderRef.parse(value)
        return value

    _normalize_positions = field_validator("before", "after", mode="before")(_lower)


class Pipeline(_Frozen):
    """Named ordered sequence of steps."""

    name: str
    label: str | None = None
    steps: tuple[Step, ...] = ()
    interpreter: Step | None = None

    @field_validator("steps", mode="before")
    @classmethod
    def _expand_steps(cls, value: Any) -> Any:
        return _steps_from_shorthand(value)

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def step_index(self, name: str) -> int | None:
        for i, step in enumerate(self.steps):
            if step.name == name:
                return i
        return None

    @property
    def async_step_names(self) -> set[str]:
        return {s.name for s in self.steps if s.is_async}


Step.model_rebuild()
Pipeline.model_rebuild()


def _steps_from_shorthand(value: Any) -> Any:
    """Expand "a|b" or ["a", "b"] into Step definitions."""
    if value is None:
        return ()
    if isinstance(value, str):
        value = [v.strip() for v in value.split("|") if v.strip()]
    if not isinstance(value, (list, tuple)):
        return value
    steps: list[Any] = []
    seen: dict[str, int] = {}
    for item in value:
        if isinstance(item, str):
            count = seen.get(item, 0)
            seen[item] = count + 1
            name = item if count == 0 else f"{item}_{count}"
            steps.append({"name": name, "provider": item})
        else:
            steps.append(item)
    return steps


# =============================================================================
# Tables
# =============================================================================


class ColumnPipeline(_Frozen):
    """Per-column transforms: args (predicate values), write (persist), read (surface)."""

    args: tuple[Step, ...] = ()
    write: tuple[Step, ...] = ()
    read: tuple[Step, ...] = ()

    _expand = field_validator("args", "write", "read", mode="before")(_steps_from_shorthand)

    def phase(self, name: str) -> tuple[Step, ...]:
        if name not in ("args", "write", "read"):
            raise ValueError(f"Unknown column pipeline phase '{name}'")
        return getattr(self, name)


class Column(_Frozen):
    name: str
    type: ColumnType = ColumnType.TEXT
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    default: ColumnDefault = ColumnDefault.NONE
    pipeline: ColumnPipeline | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_default(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw = data.get("default")
        if not isinstance(raw, str) or raw in {d.value for d in ColumnDefault}:
            return data
        typ = data.get("type", ColumnType.TEXT)
        typ = typ.value if isinstance(typ, ColumnType) else str(typ).lower()
        spec = raw.lower().replace(" ", "").replace("\t", "")
        if spec == "unique(sqid)" and typ == ColumnType.TEXT.value:
            resolved = ColumnDefault.UNIQUE_TEXT_SQID
        elif spec == "unique" and typ == ColumnType.TEXT.value:
            resolved = ColumnDefault.UNIQUE_TEXT_ULID
        elif spec == "unique" and typ == ColumnType.BIGINT.value:
            resolved = ColumnDefault.UNIQUE_BIGINT_SNOWFLAKE
        else:
            raise ValueError(
                f"Column '{data.get('name')}' of type {typ} does not support default '{raw}'"
            )
        return {**data, "default": resolved}

    _normalize_type = field_validator("type", mode="before")(_lower)


class Constraint(_Frozen):
    """
    Table constraint.

    For foreign keys each mapping binds a local column (`from`) to a
    `table.column` target (`to`). Setting on_delete/on_update implies a
    foreign key, matching how constraint documents are written in practice.
    """

    name: str
    kind: ConstraintKind = Field(default=ConstraintKind.UNIQUE, alias="type")
    columns: tuple[str, ...] = ()
    mappings: tuple[Mapping, ...] = ()
    on_delete: ConstraintAction | None = None
    on_update: ConstraintAction | None = None

    _split_columns = field_validator("columns", mode="before")(_split_csv)
    _normalize = field_validator("kind", "on_delete", "on_update", mode="before")(_lower)

    @model_validator(mode="before")
    @classmethod
    def _implied_foreign_key(cls, data: Any) -> Any:
        if isinstance(data, dict) and (data.get("on_delete") or data.get("on_update")):
            return {**data, "type": ConstraintKind.FOREIGN_KEY.value}
        return data

    @property
    def delete_action(self) -> ConstraintAction:
        return self.on_delete or ConstraintAction.RESTRICT

    @property
    def update_action(self) -> ConstraintAction:
        return self.on_update or ConstraintAction.RESTRICT

    def references(self) -> list[tuple[str, str, str]]:
        """(local_column, target_table, target_column) triples in declaration order."""
        refs = []
        for m in self.mappings:
            table, _, column = (m.target or "").partition(".")
            refs.append((m.source, table, column))
        return refs


class WellKnownBinding(_Frozen):
    """Declares that a table fulfils a platform role, aliasing its columns."""

    well_known: WellKnownType
    mappings: tuple[Mapping, ...] = ()

    _normalize = field_validator("well_known", mode="before")(_lower)


class Table(_Frozen):
    name: str
    columns: tuple[Column, ...] = ()
    constraints: tuple[Constraint, ...] = ()
    binding: WellKnownBinding | None = None

    def column(self, name: str) -> Column | None:
        for c in self.columns:
            if c.name == name:
                return c
        return None

    @property
    def column_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def primary_key(self) -> list[str]:
        return [c.name for c in self.columns if c.primary_key]

    @property
    def foreign_keys(self) -> list[Constraint]:
        return [c for c in self.constraints if c.kind == ConstraintKind.FOREIGN_KEY]


class Schema(_Frozen):
    name: str = "public"
    tables: tuple[Table, ...] = ()


class Database(_Frozen):
    name: str = Field(..., alias="label")
    type: DatabaseType = DatabaseType.MEKADB
    host: str = ""
    port: int | None = None
    db_name: str = ""
    username: str = ""
    password: SecretStr = SecretStr("")
    schemas: tuple[Schema, ...] = ()

    _normalize = field_validator("type", mode="before")(_lower)


# =============================================================================
# APIs
# =============================================================================


def _name_inline_pipeline(data: Any) -> Any:
    """Inline pipelines default to the owning endpoint's name; a bare list is its steps."""
    if not isinstance(data, dict):
        return data
    pipeline = data.get("pipeline")
    if isinstance(pipeline, (list, tuple)):
        pipeline = {"steps": pipeline}
    if not isinstance(pipeline, dict) or "name" in pipeline:
        return data
    return {**data, "pipeline": {**pipeline, "name": data.get("name", "")}}


class ResponseRule(_Frozen):
    status: int = Field(..., ge=100, le=599)
    when: str | None = None
    yield_spec: str | None = Field(default=None, alias="yield")
    mappings: tuple[Mapping, ...] = ()

    @field_validator("yield_spec", mode="before")
    @classmethod
    def _stringify_yield(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value


class Endpoint(_Frozen):
    """REST endpoint bound to a pipeline (inline, or by name until linked)."""

    name: str
    path: str = ""
    method: HttpMethod = HttpMethod.GET
    accepts: str = "application/json"
    produces: str = "application/json"
    public: bool = False
    pipeline: Pipeline | str
    responses: tuple[ResponseRule, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _name_pipeline(cls, data: Any) -> Any:
        return _name_inline_pipeline(data)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def has_fallback(self) -> bool:
        return any(r.when is None for r in self.responses)


class SubscriptionEndpoint(_Frozen):
    """Websocket endpoint fed by storage or custom events instead of requests."""

    name: str
    path: str = ""
    sources: tuple[str, ...] = ()
    pipeline: Pipeline | str

    _split_sources = field_validator("sources", mode="before")(_split_csv)

    @model_validator(mode="before")
    @classmethod
    def _name_pipeline(cls, data: Any) -> Any:
        return _name_inline_pipeline(data)


class RestApi(_Frozen):
    base: str = "/"
    endpoints: tuple[Endpoint, ...] = ()


class GraphQLOptions(_Frozen):
    base: str = "/graphql"
    derive_from: str = Field(default="rest", alias="from")
    enable_subscriptions: bool = False


class GlobalOptions(_Frozen):
    crud_tables: tuple[str, ...] = ()
    core_apis: tuple[CoreApi, ...] = ()
    implicit_steps: tuple[Step, ...] = ()

    _split_tables = field_validator("crud_tables", mode="before")(_split_csv)

    @field_validator("core_apis", mode="before")
    @classmethod
    def _normalize_core_apis(cls, value: Any) -> Any:
        value = _split_csv(value)
        if isinstance(value, (list, tuple)):
            return tuple(_lower(v) for v in value)
        return value


class Job(_Frozen):
    name: str
    pipeline: str
    enabled: bool = True
    repeats: bool = True
    start: datetime
    end: datetime | None = None
    interval: IntervalUnit = IntervalUnit.DAY
    frequency: str = Field(default="1", alias="interval_frequency")

    _normalize = field_validator("interval", mode="before")(_lower)

    @field_validator("frequency", mode="before")
    @classmethod
    def _stringify_frequency(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value)
        return value

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


class Apis(_Frozen):
    global_options: GlobalOptions = GlobalOptions()
    rest: RestApi = RestApi()
    websockets: tuple[SubscriptionEndpoint, ...] = ()
    graphql: GraphQLOptions | None = None
    jobs: tuple[Job, ...] = ()
    pipelines: tuple[Pipeline, ...] = ()


# =============================================================================
# Document
# =============================================================================


class MetaPair(_Frozen):
    key: str
    value: str


class EnvBinding(_Frozen):
    name: str
    value: str


class StepBuilder(_Frozen):
    """Registry credentials used to build/pull images for custom providers."""

    name: str
    image: ProviderRef

    @field_validator("image", mode="before")
    @classmethod
    def _parse_image(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ProviderRef.parse(f"docker:{value}")
        return value


class Document(_Frozen):
    """Root of the assembled configuration."""

    meta: tuple[MetaPair, ...] = ()
    env: tuple[EnvBinding, ...] = ()
    databases: tuple[Database, ...] = ()
    apis: Apis = Apis()
    step_builders: tuple[StepBuilder, ...] = ()

    @field_validator("meta", "env", mode="before")
    @classmethod
    def _pairs_from_mapping(cls, value: Any, info: Any) -> Any:
        if isinstance(value, dict):
            key = "key" if info.field_name == "meta" else "name"
            return [{key: k, "value": str(v)} for k, v in value.items()]
        return value

    def env_map(self) -> dict[str, str]:
        return {e.name: e.value for e in self.env}

    def meta_map(self) -> dict[str, str]:
        return {m.key: m.value for m in self.meta}

    def iter_tables(self) -> Iterator[tuple[Database, Schema, Table]]:
        for db in self.databases:
            for schema in db.schemas:
                for table in schema.tables:
                    yield db, schema, table

    def table(self, name: str) -> Table | None:
        for _, _, table in self.iter_tables():
            if table.name == name:
                return table
        return None

    def pipeline(self, name: str) -> Pipeline | None:
        for p in self.apis.pipelines:
            if p.name == name:
                return p
        for ep in self.apis.rest.endpoints:
            if isinstance(ep.pipeline, Pipeline) and ep.pipeline.name == name:
                return ep.pipeline
        for ws in self.apis.websockets:
            if isinstance(ws.pipeline, Pipeline) and ws.pipeline.name == name:
                return ws.pipeline
        return None

    def endpoint(self, name: str) -> Endpoint | None:
        for ep in self.apis.rest.endpoints:
            if ep.name == name:
                return ep
        return None

    def call_target(self, name: str) -> Pipeline | None:
        """Pipeline a `call:` step runs: a named pipeline, else an endpoint's."""
        pipeline = self.pipeline(name)
        if pipeline is not None:
            return pipeline
        ep = self.endpoint(name)
        if ep is not None and isinstance(ep.pipeline, Pipeline):
            return ep.pipeline
        return None

    def subscription(self, name: str) -> SubscriptionEndpoint | None:
        for ws in self.apis.websockets:
            if ws.name == name:
                return ws
        return None

    def job(self, name: str) -> Job | None:
        for job in self.apis.jobs:
            if job.name == name:
                return job
        return None


Mapping.model_rebuild()
