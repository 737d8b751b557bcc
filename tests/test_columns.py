"""
Tests for per-column write / read / args transforms.
"""

import asyncio
import hashlib
import hmac

import pytest

from conduit.config.schemas import Column
from conduit.errors import ColumnTransformError
from conduit.storage.columns import ColumnTransformPipeline


@pytest.fixture
def document(config_store):
    return config_store.current().document


@pytest.fixture
def columns(executor, document):
    pipeline = ColumnTransformPipeline(executor, env=document.env_map())
    yield pipeline
    pipeline.close()


def sha256(text):
    return hashlib.sha256(text.encode()).hexdigest()


class TestColumnTransforms:
    """Tests for single-value phases."""

    @pytest.mark.asyncio
    async def test_write_hash_never_stores_plaintext(self, columns, document):
        account = document.table("account")
        stored = await columns.transform("account", account.column("password"), "write", "secret")

        assert stored != "secret"
        assert stored == sha256("secret")

    @pytest.mark.asyncio
    async def test_read_phase_suppresses_value(self, columns, document):
        password = document.table("account").column("password")
        assert await columns.transform("account", password, "read", sha256("secret")) is None

    @pytest.mark.asyncio
    async def test_args_phase_matches_write_phase(self, columns, document):
        account = document.table("account")
        email = account.column("email")

        written = await columns.transform("account", email, "write", "  Ann@Example.COM ")
        compared = await columns.args_value(account, "email", "ann@example.com  ")

        assert written == compared == "ann@example.com"

    @pytest.mark.asyncio
    async def test_column_without_phase_passes_value(self, columns, document):
        name = document.table("team").column("name")
        assert await columns.transform("team", name, "write", " Core ") == " Core "
        assert columns.pipeline_for("team", name, "write") is None

    @pytest.mark.asyncio
    async def test_keyed_hash_uses_environment(self, columns):
        token = Column.model_validate({"name": "token", "pipeline": {"write": "hmac_sha256"}})

        stored = await columns.transform("session", token, "write", "abc")

        expected = hmac.new(b"k3y", b"abc", hashlib.sha256).hexdigest()
        assert stored == expected

    @pytest.mark.asyncio
    async def test_failing_phase_raises(self, executor, monkeypatch):
        monkeypatch.delenv("COLUMN_HASH_KEY", raising=False)
        columns = ColumnTransformPipeline(executor)
        token = Column.model_validate({"name": "token", "pipeline": {"write": "hmac_sha256"}})

        with pytest.raises(ColumnTransformError) as exc:
            await columns.transform("session", token, "write", "abc")

        assert exc.value.phase == "write"
        assert (exc.value.table, exc.value.column) == ("session", "token")
        assert "COLUMN_HASH_KEY" in exc.value.reason

    @pytest.mark.asyncio
    async def test_scalar_step_output_is_the_value(self, registry, columns):
        registry.register("length", lambda payload, ctx: len(payload["value"]))
        column = Column.model_validate({"name": "n", "pipeline": {"write": "length"}})
        assert await columns.transform("t", column, "write", "abcd") == 4

    def test_unknown_phase(self, columns, document):
        with pytest.raises(ValueError):
            columns.pipeline_for("account", document.table("account").column("email"), "delete")

    def test_pipeline_cached_per_column(self, columns, document):
        email = document.table("account").column("email")
        first = columns.pipeline_for("account", email, "write")
        assert first is columns.pipeline_for("account", email, "write")
        assert first.name == "account.email:write"
        assert [s.name for s in first.steps] == ["trim", "lower"]


class TestRows:
    """Tests for whole-row phases."""

    @pytest.mark.asyncio
    async def test_write_and_read_row(self, columns, document):
        account = document.table("account")
        stored = await columns.write_row(account, {"id": 1, "email": " A@B.COM", "password": "pw"})

        assert stored == {"id": 1, "email": "a@b.com", "password": sha256("pw")}
        assert await columns.read_row(account, stored) == {
            "id": 1,
            "email": "a@b.com",
            "password": None,
        }


class TestSyncTransform:
    """Tests for the blocking entry point."""

    def test_without_running_loop(self, columns, document):
        password = document.table("account").column("password")
        assert columns.transform_sync("account", password, "args", "pw") == sha256("pw")
        # The private loop is reused between calls
        assert columns.transform_sync("account", password, "args", "pw2") == sha256("pw2")

    @pytest.mark.asyncio
    async def test_inside_running_loop(self, columns, document):
        password = document.table("account").column("password")
        value = await asyncio.to_thread(
            columns.transform_sync, "account", password, "args", "pw"
        )
        assert value == sha256("pw")
        assert columns.transform_sync("account", password, "args", "pw") == sha256("pw")
