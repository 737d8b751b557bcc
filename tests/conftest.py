"""
Pytest configuration and fixtures for Conduit tests.
"""

import sys
from pathlib import Path

import pytest

# Add the repository root to path for imports
# This allows `from conduit.pipeline import ...` to work
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from conduit.config.schemas import Pipeline  # noqa: E402
from conduit.config.store import ConfigStore  # noqa: E402
from conduit.pipeline.context import ExecutionContext  # noqa: E402
from conduit.pipeline.executor import StepExecutor  # noqa: E402
from conduit.pipeline.observability import PipelineMetrics, reset_metrics  # noqa: E402
from conduit.pipeline.retry import NoBackoff, RetryPolicy  # noqa: E402
from conduit.pipeline.runner import PipelineRunner  # noqa: E402
from conduit.pipeline.step import ProviderRegistry  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Isolate the global metrics between tests."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def metrics():
    return PipelineMetrics()


@pytest.fixture
def registry():
    """Registry with the default builtins plus a few test providers."""
    registry = ProviderRegistry()

    def echo(payload, ctx):
        return payload

    def outcome(payload, ctx):
        # Returns whatever the caller asked for under "result"
        return dict(payload.get("result", {}))

    registry.register("echo", echo)
    registry.register("outcome", outcome)
    return registry


@pytest.fixture
def executor(registry, metrics):
    return StepExecutor(
        registry,
        retry_policy=RetryPolicy(max_attempts=3, backoff=NoBackoff()),
        default_timeout=1.0,
        metrics=metrics,
    )


@pytest.fixture
def runner(executor, metrics):
    return PipelineRunner(executor, metrics=metrics)


@pytest.fixture
def ctx():
    return ExecutionContext(args={"team_name": "Core"}, env={"REGION": "eu"})


@pytest.fixture
def build_pipeline():
    """Build a Pipeline from raw step definitions."""

    def build(name, steps, **extra):
        return Pipeline.model_validate({"name": name, "steps": steps, **extra})

    return build


@pytest.fixture
def app_tree():
    """A complete raw document exercising tables, endpoints, subscriptions and jobs."""
    return {
        "meta": {"app": "teams"},
        "env": {"REGION": "eu", "COLUMN_HASH_KEY": "k3y"},
        "databases": [
            {
                "label": "main",
                "schemas": [
                    {
                        "name": "public",
                        "tables": [
                            {
                                "name": "team",
                                "columns": [
                                    {"name": "id", "type": "text", "primary_key": True,
                                     "default": "unique"},
                                    {"name": "name", "type": "text", "nullable": False,
                                     "unique": True},
                                ],
                            },
                            {
                                "name": "account",
                                "columns": [
                                    {"name": "id", "type": "bigint", "primary_key": True,
                                     "default": "unique"},
                                    {"name": "email", "type": "text",
                                     "pipeline": {"write": "trim|lower", "args": "trim|lower"}},
                                    {"name": "password", "type": "text",
                                     "pipeline": {"write": "hash1", "args": "hash1",
                                                  "read": "null"}},
                                ],
                            },
                            {
                                "name": "block",
                                "columns": [
                                    {"name": "id", "type": "text", "primary_key": True},
                                    {"name": "kind", "type": "text"},
                                ],
                            },
                            {
                                "name": "message",
                                "columns": [
                                    {"name": "id", "type": "text", "primary_key": True,
                                     "default": "unique(sqid)"},
                                    {"name": "body", "type": "text"},
                                ],
                            },
                            {
                                "name": "message_block",
                                "columns": [
                                    {"name": "id", "type": "text", "primary_key": True,
                                     "default": "unique"},
                                    {"name": "message_id", "type": "text"},
                                    {"name": "block_id", "type": "text"},
                                ],
                                "constraints": [
                                    {"name": "mb_block", "on_delete": "cascade",
                                     "on_update": "restrict",
                                     "mappings": [{"from": "block_id", "to": "block.id"}]},
                                    {"name": "mb_message", "on_delete": "restrict",
                                     "on_update": "cascade",
                                     "mappings": [{"from": "message_id", "to": "message.id"}]},
                                ],
                            },
                        ],
                    }
                ],
            }
        ],
        "apis": {
            "global_options": {"crud_tables": "team, account"},
            "rest": {
                "base": "/api",
                "endpoints": [
                    {
                        "name": "create_team",
                        "path": "/teams",
                        "method": "post",
                        "pipeline": [
                            {"name": "create", "provider": "outcome",
                             "mappings": [{"from": "args.result", "to": "result"}]},
                        ],
                        "responses": [
                            {"status": 400, "when": "success == false",
                             "mappings": [{"from": "field1", "to": "field1a"},
                                          {"from": "field2", "to": "field2a"}]},
                            {"status": 201},
                        ],
                    },
                    {
                        "name": "get_team",
                        "path": "/teams/{id}",
                        "method": "get",
                        "pipeline": "lookup_team",
                        "responses": [{"status": 200}],
                    },
                ],
            },
            "websockets": [
                {"name": "messages", "sources": "message, announcement",
                 "pipeline": {"steps": ["echo"]}},
            ],
            "pipelines": [
                {"name": "lookup_team", "steps": [
                    {"name": "find", "provider": "echo",
                     "mappings": [{"from": "args.id", "to": "id"},
                                  {"from": "env.REGION", "to": "region"}]},
                ]},
                {"name": "nightly_cleanup", "steps": ["echo"]},
            ],
            "jobs": [
                {"name": "cleanup", "pipeline": "nightly_cleanup", "interval": "month_end",
                 "start": "2024-01-31T03:00:00Z"},
            ],
        },
    }


@pytest.fixture
def config_store(registry, app_tree):
    store = ConfigStore(registry)
    store.load_dict(app_tree)
    return store
