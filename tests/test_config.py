"""
Tests for configuration loading, linking and snapshots.
"""

import json
from datetime import UTC, datetime

import pytest
import yaml
from pydantic import ValidationError

from conduit.config.linker import Linker
from conduit.config.loader import load_document, load_tree, merge, parse_document
from conduit.config.schemas import (
    ColumnDefault,
    ConstraintAction,
    ConstraintKind,
    IntervalUnit,
    Pipeline,
    ProviderKind,
    ProviderRef,
    Step,
)
from conduit.config.settings import EngineSettings, get_settings
from conduit.config.store import ConfigStore
from conduit.errors import ConduitError, ConfigValidationError


def write_yaml(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def table(name, *columns, constraints=()):
    return {"name": name, "columns": list(columns), "constraints": list(constraints)}


def database(*tables):
    return {"label": "main", "schemas": [{"name": "public", "tables": list(tables)}]}


# =============================================================================
# Schema parsing
# =============================================================================


class TestProviderRef:
    """Tests for ProviderRef.parse."""

    def test_bare_name_is_builtin(self):
        ref = ProviderRef.parse("sha256")
        assert ref.kind == ProviderKind.BUILTIN
        assert ref.name == "sha256"

    def test_explicit_builtin(self):
        assert ProviderRef.parse("builtin:trim").name == "trim"

    def test_docker_image_with_tag(self):
        ref = ProviderRef.parse("docker:acme/resize:1.2")
        assert ref.kind == ProviderKind.IMAGE
        assert (ref.image, ref.tag) == ("acme/resize", "1.2")

    def test_docker_credentials(self):
        ref = ProviderRef.parse("docker:bot:s3cret@registry.local:5000/resize")
        assert ref.username == "bot"
        assert ref.password.get_secret_value() == "s3cret"
        assert ref.image == "registry.local:5000/resize"
        assert ref.tag is None

    def test_dockerfile(self):
        ref = ProviderRef.parse("file:steps/resize/Dockerfile")
        assert ref.kind == ProviderKind.DOCKERFILE
        assert ref.path == "steps/resize/"

    def test_dockerfile_without_file_prefix_rejected(self):
        with pytest.raises(ValueError):
            ProviderRef.parse("steps/resize/Dockerfile")

    def test_custom_builder(self):
        ref = ProviderRef.parse("python:steps/resize")
        assert ref.kind == ProviderKind.CUSTOM
        assert (ref.name, ref.path) == ("python", "steps/resize")

    def test_pipeline_and_call_targets(self):
        ref = ProviderRef.parse("call:create_team")
        assert (ref.kind, ref.name) == (ProviderKind.CALL, "create_team")
        assert str(ref) == "call:create_team"
        assert ProviderRef.parse("pipeline:audit").is_nested
        with pytest.raises(ValueError):
            ProviderRef.parse("call:")


class TestColumnDefaults:
    """Tests for default policy resolution."""

    def test_defaults_resolve_by_type(self):
        doc = parse_document(
            {
                "databases": [
                    database(
                        table(
                            "t",
                            {"name": "a", "type": "text", "default": "unique"},
                            {"name": "b", "type": "text", "default": "unique(sqid)"},
                            {"name": "c", "type": "bigint", "default": "UNIQUE"},
                            {"name": "d", "type": "text"},
                        )
                    )
                ]
            }
        )
        t = doc.table("t")
        assert t.column("a").default == ColumnDefault.UNIQUE_TEXT_ULID
        assert t.column("b").default == ColumnDefault.UNIQUE_TEXT_SQID
        assert t.column("c").default == ColumnDefault.UNIQUE_BIGINT_SNOWFLAKE
        assert t.column("d").default == ColumnDefault.NONE

    @pytest.mark.parametrize(
        "column",
        [
            {"name": "a", "type": "int", "default": "unique"},
            {"name": "a", "type": "bigint", "default": "unique(sqid)"},
            {"name": "a", "type": "text", "default": "random"},
        ],
    )
    def test_unsupported_default_rejected(self, column):
        with pytest.raises(ConfigValidationError):
            parse_document({"databases": [database(table("t", column))]})

    def test_pipeline_shorthand(self):
        doc = parse_document(
            {
                "databases": [
                    database(
                        table("t", {"name": "pw", "pipeline": {"write": "trim|hash1|trim"}})
                    )
                ]
            }
        )
        steps = doc.table("t").column("pw").pipeline.write
        assert [s.name for s in steps] == ["trim", "hash1", "trim_1"]
        assert all(s.provider.is_builtin for s in steps)

    def test_constraint_with_actions_is_foreign_key(self):
        doc = parse_document(
            {
                "databases": [
                    database(
                        table(
                            "child",
                            {"name": "parent_id"},
                            constraints=[
                                {"name": "fk", "on_delete": "CASCADE",
                                 "mappings": [{"from": "parent_id", "to": "parent.id"}]}
                            ],
                        )
                    )
                ]
            }
        )
        fk = doc.table("child").constraints[0]
        assert fk.kind == ConstraintKind.FOREIGN_KEY
        assert fk.delete_action == ConstraintAction.CASCADE
        assert fk.update_action == ConstraintAction.RESTRICT
        assert fk.references() == [("parent_id", "parent", "id")]


class TestDocumentParsing:
    """Tests for parse_document."""

    def test_inline_endpoint_pipeline_named_after_endpoint(self, app_tree):
        doc = parse_document(app_tree)
        endpoint = doc.endpoint("create_team")
        assert isinstance(endpoint.pipeline, Pipeline)
        assert endpoint.pipeline.name == "create_team"

    def test_job_fields(self, app_tree):
        job = parse_document(app_tree).job("cleanup")
        assert job.interval == IntervalUnit.MONTH_END
        assert job.start == datetime(2024, 1, 31, 3, tzinfo=UTC)
        assert job.frequency == "1"

    def test_job_frequency_list(self):
        doc = parse_document(
            {"apis": {"jobs": [{"name": "j", "pipeline": "p", "start": "2024-01-01T00:00:00",
                                "interval": "week", "interval_frequency": [1, 3, 5]}]}}
        )
        job = doc.job("j")
        assert job.frequency == "1,3,5"
        assert job.start.tzinfo is not None

    def test_env_and_meta_maps(self, app_tree):
        doc = parse_document(app_tree)
        assert doc.env_map()["REGION"] == "eu"
        assert doc.meta_map() == {"app": "teams"}

    def test_step_target_forms(self):
        call = Step.model_validate({"name": "s", "call": "create_team"})
        assert call.provider == ProviderRef(kind=ProviderKind.CALL, name="create_team")

        named = Step.model_validate({"name": "s", "pipeline": "audit", "async": True})
        assert named.provider == ProviderRef(kind=ProviderKind.PIPELINE, name="audit")
        assert named.pipeline is None
        assert named.is_async

        listed = Step.model_validate({"name": "clean", "pipeline": ["trim", "lower"]})
        assert listed.pipeline.name == "clean"
        assert listed.pipeline.step_names == ["trim", "lower"]
        assert str(listed.provider) == "pipeline:clean"

    @pytest.mark.parametrize(
        "step",
        [
            {"name": "s", "call": "x", "provider": "trim"},
            {"name": "s", "call": "x", "pipeline": "y"},
        ],
    )
    def test_step_with_two_targets_rejected(self, step):
        with pytest.raises(ValidationError):
            Step.model_validate(step)

    def test_call_target_lookup(self, config_store):
        doc = config_store.current().document
        assert doc.call_target("lookup_team").name == "lookup_team"
        assert doc.call_target("get_team").name == "lookup_team"
        assert doc.call_target("create_team").name == "create_team"
        assert doc.call_target("ghost") is None

    def test_unknown_keys_reported(self):
        with pytest.raises(ConfigValidationError) as exc:
            parse_document({"apis": {"rest": {"endpoints": [{"name": "x", "pipline": "p"}]}}})
        assert len(exc.value.issues) >= 2


# =============================================================================
# Loader
# =============================================================================


class TestMerge:
    """Tests for fragment merging."""

    def test_dicts_merge_deeply(self):
        assert merge({"a": {"x": 1}}, {"a": {"y": 2}}) == {"a": {"x": 1, "y": 2}}

    def test_named_items_merge_by_name(self):
        merged = merge(
            [{"name": "t", "columns": [{"name": "a"}]}],
            [{"name": "t", "columns": [{"name": "b"}]}, {"name": "u"}],
        )
        assert merged == [{"name": "t", "columns": [{"name": "a"}, {"name": "b"}]}, {"name": "u"}]

    def test_labelled_items_merge_by_label(self):
        merged = merge([{"label": "main", "host": "a"}], [{"label": "main", "port": 1}])
        assert merged == [{"label": "main", "host": "a", "port": 1}]

    def test_plain_lists_concatenate_and_scalars_override(self):
        assert merge({"l": [1], "s": "a"}, {"l": [2], "s": "b"}) == {"l": [1, 2], "s": "b"}


class TestLoader:
    """Tests for reading fragments from disk."""

    def test_forward_foreign_key_across_fragments(self, tmp_path):
        # The child table is declared before the table it references exists
        write_yaml(
            tmp_path / "a_child.yaml",
            {"databases": [database(table(
                "message_block",
                {"name": "id", "primary_key": True},
                {"name": "block_id"},
                constraints=[{"name": "fk", "on_delete": "cascade",
                              "mappings": [{"from": "block_id", "to": "block.id"}]}],
            ))]},
        )
        write_yaml(
            tmp_path / "b_parent.yaml",
            {"databases": [database(table("block", {"name": "id", "primary_key": True}))]},
        )

        store = ConfigStore()
        snapshot = store.load([tmp_path])
        names = [t.name for _, _, t in snapshot.document.iter_tables()]
        assert names == ["message_block", "block"]

    def test_imports_and_inline_import(self, tmp_path):
        (tmp_path / "endpoints").mkdir()
        write_yaml(
            tmp_path / "endpoints" / "ping.yaml",
            {"name": "ping", "pipeline": ["identity"], "responses": [{"status": 200}]},
        )
        write_yaml(tmp_path / "tables.yaml", {"databases": [database(table("t", {"name": "a"}))]})
        (tmp_path / "pipelines.json").write_text(
            json.dumps({"apis": {"pipelines": [{"name": "p", "steps": ["trim"]}]}})
        )
        root = write_yaml(
            tmp_path / "app.yaml",
            {
                "imports": ["tables.yaml", "pipelines.json"],
                "apis": {"rest": {"endpoints": [{"import": "endpoints/ping.yaml"}]}},
            },
        )

        doc = load_document([root])
        assert doc.table("t") is not None
        assert doc.pipeline("p") is not None
        assert doc.endpoint("ping").pipeline.name == "ping"

    def test_directory_import(self, tmp_path):
        (tmp_path / "frag").mkdir()
        write_yaml(tmp_path / "frag" / "1.yaml", {"meta": {"a": "1"}})
        write_yaml(tmp_path / "frag" / "2.yml", {"meta": {"b": "2"}})
        root = write_yaml(tmp_path / "app.yaml", {"imports": "frag"})
        assert load_tree([root]) == {"meta": {"a": "1", "b": "2"}}

    def test_import_cycle_detected(self, tmp_path):
        write_yaml(tmp_path / "a.yaml", {"imports": ["b.yaml"]})
        write_yaml(tmp_path / "b.yaml", {"imports": ["a.yaml"]})
        with pytest.raises(ConfigValidationError, match="cycle"):
            load_tree([tmp_path / "a.yaml"])

    def test_inline_import_with_other_keys_rejected(self, tmp_path):
        write_yaml(tmp_path / "x.yaml", {"name": "x"})
        root = write_yaml(tmp_path / "app.yaml", {"apis": {"import": "x.yaml", "extra": 1}})
        with pytest.raises(ConfigValidationError, match="cannot be combined"):
            load_tree([root])

    def test_missing_file(self, tmp_path):
        root = write_yaml(tmp_path / "app.yaml", {"imports": ["nope.yaml"]})
        with pytest.raises(ConfigValidationError, match="not found"):
            load_tree([root])

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("apis: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigValidationError):
            load_tree([path])


# =============================================================================
# Linker
# =============================================================================


class TestLinker:
    """Tests for the link phase."""

    def test_valid_document_links_named_pipelines(self, app_tree, registry):
        result = Linker(registry).link(parse_document(app_tree))
        endpoint = result.document.endpoint("get_team")
        assert isinstance(endpoint.pipeline, Pipeline)
        assert endpoint.pipeline.name == "lookup_team"
        assert result.warnings == ()

    def test_missing_fallback_is_warning(self, app_tree):
        app_tree["apis"]["rest"]["endpoints"][1]["responses"] = [{"status": 200, "when": "success"}]
        result = Linker().link(parse_document(app_tree))
        assert any("get_team" in w for w in result.warnings)

    def test_issues_are_collected(self, app_tree):
        apis = app_tree["apis"]
        apis["pipelines"].append({"name": "lookup_team", "steps": ["trim"]})
        apis["jobs"].append({"name": "orphan", "pipeline": "nope", "start": "2024-01-01T00:00:00Z"})
        apis["global_options"]["crud_tables"] = "team, ghost"

        with pytest.raises(ConfigValidationError) as exc:
            Linker().link(parse_document(app_tree))
        issues = " | ".join(exc.value.issues)
        assert "Duplicate pipeline 'lookup_team'" in issues
        assert "unknown pipeline 'nope'" in issues
        assert "unknown table 'ghost'" in issues

    def test_unresolved_foreign_key(self):
        doc = parse_document(
            {"databases": [database(table(
                "child",
                {"name": "parent_id"},
                constraints=[{"name": "fk", "on_delete": "cascade",
                              "mappings": [{"from": "parent_id", "to": "parent.id"}]}],
            ))]}
        )
        with pytest.raises(ConfigValidationError, match="unknown table 'parent'"):
            Linker().link(doc)

    @pytest.mark.parametrize(
        "tables",
        [
            [table("t", {"name": "a"}, {"name": "a"})],
            [table("t", {"name": "a"}), table("t", {"name": "b"})],
            [table("t", {"name": "a", "primary_key": True}, {"name": "b", "primary_key": True})],
        ],
    )
    def test_table_shape_errors(self, tables):
        with pytest.raises(ConfigValidationError):
            Linker().link(parse_document({"databases": [database(*tables)]}))

    def test_duplicate_step_names(self):
        doc = parse_document(
            {"apis": {"pipelines": [{"name": "p", "steps": [
                {"name": "s", "provider": "trim"}, {"name": "s", "provider": "lower"}]}]}}
        )
        with pytest.raises(ConfigValidationError, match="Duplicate step 's'"):
            Linker().link(doc)

    def test_mapping_referencing_later_step(self):
        doc = parse_document(
            {"apis": {"pipelines": [{"name": "p", "steps": [
                {"name": "first", "provider": "identity",
                 "mappings": [{"from": "second.id", "to": "id"}]},
                {"name": "second", "provider": "identity"},
            ]}]}}
        )
        with pytest.raises(ConfigValidationError, match="has not run yet"):
            Linker().link(doc)

    def test_bad_expressions_and_yield(self):
        doc = parse_document(
            {"apis": {"rest": {"endpoints": [{
                "name": "e",
                "pipeline": [{"name": "s", "provider": "identity",
                              "mappings": [{"from": "args.", "to": "x"}]}],
                "responses": [{"status": 200, "when": "a ==", "yield": "3..1"}],
            }]}}}
        )
        with pytest.raises(ConfigValidationError) as exc:
            Linker().link(doc)
        assert len(exc.value.issues) == 3

    def test_unknown_builtin_with_registry(self, registry):
        doc = parse_document({"apis": {"pipelines": [{"name": "p", "steps": ["no_such_step"]}]}})
        with pytest.raises(ConfigValidationError, match="unknown builtin provider"):
            Linker(registry).link(doc)
        Linker().link(doc)

    def test_job_checks(self):
        doc = parse_document(
            {"apis": {
                "pipelines": [{"name": "p", "steps": ["identity"]}],
                "jobs": [
                    {"name": "late", "pipeline": "p", "start": "2024-02-01T00:00:00Z",
                     "end": "2024-01-01T00:00:00Z"},
                    {"name": "hours", "pipeline": "p", "start": "2024-01-01T00:00:00Z",
                     "interval": "hour", "interval_frequency": "0,25"},
                    {"name": "zero", "pipeline": "p", "start": "2024-01-01T00:00:00Z",
                     "interval_frequency": "0"},
                ],
            }}
        )
        with pytest.raises(ConfigValidationError) as exc:
            Linker().link(doc)
        issues = " | ".join(exc.value.issues)
        assert "ends before it starts" in issues
        assert "'hours'" in issues
        assert "'zero'" in issues

    def test_implicit_step_needs_position(self):
        doc = parse_document(
            {"apis": {"global_options": {"implicit_steps": [{"name": "x", "provider": "trim"}]}}}
        )
        with pytest.raises(ConfigValidationError, match="before or after"):
            Linker().link(doc)

    @pytest.mark.parametrize("name", ["args", "env", "pipeline"])
    def test_reserved_step_names(self, name):
        doc = parse_document(
            {"apis": {"pipelines": [{"name": "p", "steps": [{"name": name, "provider": "trim"}]}]}}
        )
        with pytest.raises(ConfigValidationError, match="reserved name"):
            Linker().link(doc)

    def test_implicit_step_named_like_pipeline_step(self):
        doc = parse_document(
            {"apis": {
                "global_options": {"implicit_steps": [
                    {"name": "echo", "provider": "echo", "before": "first"}]},
                "pipelines": [{"name": "p", "steps": ["echo"]}],
            }}
        )
        with pytest.raises(ConfigValidationError, match="same name as a pipeline step"):
            Linker().link(doc)

    def test_call_targets(self):
        doc = parse_document(
            {"apis": {"pipelines": [
                {"name": "a", "steps": [{"name": "to_b", "pipeline": "b"}]},
                {"name": "b", "steps": [{"name": "to_a", "call": "a"}]},
                {"name": "c", "steps": [{"name": "lost", "call": "ghost"},
                                        {"name": "gone", "pipeline": "nope"}]},
            ]}}
        )
        with pytest.raises(ConfigValidationError) as exc:
            Linker().link(doc)
        issues = " | ".join(exc.value.issues)
        assert "calls itself: a -> b -> a" in issues
        assert "unknown endpoint or pipeline 'ghost'" in issues
        assert "unknown pipeline 'nope'" in issues

    def test_call_to_endpoint_links(self, app_tree, registry):
        app_tree["apis"]["pipelines"].append(
            {"name": "proxy", "steps": [
                {"name": "fetch", "call": "get_team",
                 "mappings": [{"from": "args.id", "to": "id"}]}]}
        )
        result = Linker(registry).link(parse_document(app_tree))
        assert result.document.pipeline("proxy").steps[0].provider.kind == ProviderKind.CALL

    def test_nested_pipeline_checked(self):
        doc = parse_document(
            {"apis": {"pipelines": [{"name": "p", "steps": [
                {"name": "wrap", "pipeline": [
                    {"name": "x", "provider": "identity",
                     "mappings": [{"from": "y.id", "to": "id"}]},
                    {"name": "y", "provider": "identity"},
                ]},
            ]}]}}
        )
        with pytest.raises(ConfigValidationError, match="nested pipeline of step 'wrap'"):
            Linker().link(doc)

    def test_async_step_output_is_not_readable(self):
        doc = parse_document(
            {"apis": {"pipelines": [{"name": "p", "steps": [
                {"name": "notify", "provider": "identity", "async": True},
                {"name": "next", "provider": "identity",
                 "mappings": [{"from": "notify.id", "to": "id"}]},
            ]}]}}
        )
        with pytest.raises(ConfigValidationError, match="never awaited"):
            Linker().link(doc)

    def test_column_transforms_cannot_nest(self):
        doc = parse_document(
            {"databases": [database(table(
                "t", {"name": "pw", "pipeline": {"write": [{"name": "h", "call": "hash"}]}}
            ))]}
        )
        with pytest.raises(ConfigValidationError, match="column transforms cannot"):
            Linker().link(doc)


# =============================================================================
# Store
# =============================================================================


class TestConfigStore:
    """Tests for snapshots and reload."""

    def test_current_before_load_raises(self):
        with pytest.raises(ConduitError):
            ConfigStore().current()

    def test_load_bumps_epoch_and_notifies(self, app_tree, registry):
        store = ConfigStore(registry)
        seen = []
        store.add_listener(lambda snap: seen.append(snap.epoch))

        first = store.load_dict(app_tree)
        second = store.load_dict(app_tree)

        assert (first.epoch, second.epoch) == (1, 2)
        assert seen == [1, 2]
        assert store.current() is second

    def test_failed_reload_keeps_previous_snapshot(self, config_store, app_tree):
        before = config_store.current()
        app_tree["apis"]["jobs"][0]["pipeline"] = "missing"

        with pytest.raises(ConfigValidationError):
            config_store.load_dict(app_tree)

        assert config_store.current() is before
        assert config_store.epoch == before.epoch

    def test_failed_file_load_keeps_previous_snapshot(self, config_store, tmp_path):
        before = config_store.current()
        with pytest.raises(ConfigValidationError):
            config_store.load([tmp_path / "missing.yaml"])
        assert config_store.current() is before

    def test_snapshot_is_immutable(self, config_store):
        document = config_store.current().document
        with pytest.raises(ValidationError):
            document.env = ()


class TestSettings:
    """Tests for environment-driven settings."""

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("CONDUIT_STEP_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("CONDUIT_RETRY_ATTEMPTS", "4")
        monkeypatch.setenv("CONDUIT_BACKEND_URL", "http://runner:8700")
        monkeypatch.setenv("CONDUIT_WORKER_ID", "7")
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.step_timeout_seconds == 5.0
            assert settings.retry_attempts == 4
            assert settings.backend_url == "http://runner:8700"
            assert settings.worker_id == 7
        finally:
            get_settings.cache_clear()

    def test_worker_id_bounds(self):
        with pytest.raises(ValueError):
            EngineSettings(worker_id=1024)
