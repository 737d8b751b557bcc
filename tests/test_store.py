"""
Tests for the in-memory reference table store.
"""

import hashlib

import pytest

from conduit.errors import ColumnTransformError, ConduitError, ConstraintViolationError
from conduit.storage import ColumnTransformPipeline, IdGenerators, TableStore


@pytest.fixture
def events():
    return []


@pytest.fixture
def tables(config_store, executor, events):
    document = config_store.current().document
    columns = ColumnTransformPipeline(executor, env=document.env_map())

    async def collect(event):
        events.append(event)

    return TableStore(document, columns=columns, ids=IdGenerators(worker_id=1), on_event=collect)


async def link_blocks(tables):
    """Two blocks and one message, each block linked to the message."""
    await tables.insert("block", {"id": "b1", "kind": "text"})
    await tables.insert("block", {"id": "b2", "kind": "image"})
    message = await tables.insert("message", {"body": "hello"})
    await tables.insert("message_block", {"message_id": message["id"], "block_id": "b1"})
    await tables.insert("message_block", {"message_id": message["id"], "block_id": "b2"})
    return message


class TestInsert:
    """Tests for inserts, defaults and transforms."""

    @pytest.mark.asyncio
    async def test_defaults_generated_by_type(self, tables):
        team = await tables.insert("team", {"name": "Core"})
        account = await tables.insert("account", {"email": "a@b.com"})
        message = await tables.insert("message", {"body": "hi"})

        assert isinstance(team["id"], str) and len(team["id"]) == 26
        assert isinstance(account["id"], int)
        assert isinstance(message["id"], str)

    @pytest.mark.asyncio
    async def test_explicit_value_wins_over_default(self, tables):
        team = await tables.insert("team", {"id": "t1", "name": "Core"})
        assert team["id"] == "t1"
        assert await tables.get("team", "t1") == {"id": "t1", "name": "Core"}

    @pytest.mark.asyncio
    async def test_transforms_applied(self, tables):
        account = await tables.insert("account", {"email": " Ann@B.COM ", "password": "secret"})

        assert account["email"] == "ann@b.com"
        assert account["password"] is None
        stored = tables._rows["account"][account["id"]]
        assert stored["password"] == hashlib.sha256(b"secret").hexdigest()
        assert "secret" not in stored.values()

    @pytest.mark.asyncio
    async def test_select_runs_args_phase(self, tables):
        await tables.insert("account", {"email": "ann@b.com", "password": "secret"})
        await tables.insert("account", {"email": "bob@b.com", "password": "other"})

        by_password = await tables.select("account", {"password": "secret"})
        by_email = await tables.select("account", {"email": "  ANN@B.com"})

        assert [r["email"] for r in by_password] == ["ann@b.com"]
        assert [r["email"] for r in by_email] == ["ann@b.com"]

    @pytest.mark.asyncio
    async def test_not_null(self, tables):
        with pytest.raises(ConstraintViolationError) as exc:
            await tables.insert("team", {"id": "t1"})
        assert exc.value.constraint == "name"

    @pytest.mark.asyncio
    async def test_unique_column(self, tables, events):
        await tables.insert("team", {"name": "Core"})
        with pytest.raises(ConstraintViolationError, match="duplicate value"):
            await tables.insert("team", {"name": "Core"})
        assert tables.count("team") == 1
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_duplicate_primary_key(self, tables):
        await tables.insert("block", {"id": "b1"})
        with pytest.raises(ConstraintViolationError, match="duplicate key"):
            await tables.insert("block", {"id": "b1"})

    @pytest.mark.asyncio
    async def test_missing_foreign_key_target(self, tables):
        with pytest.raises(ConstraintViolationError) as exc:
            await tables.insert("message_block", {"message_id": "nope", "block_id": None})
        assert exc.value.constraint == "mb_message"

    @pytest.mark.asyncio
    async def test_unknown_table_and_column(self, tables):
        with pytest.raises(ConduitError):
            await tables.insert("ghost", {})
        with pytest.raises(ConduitError):
            await tables.insert("team", {"name": "x", "colour": "red"})

    @pytest.mark.asyncio
    async def test_failing_transform_rejects_row(self, tables, registry, config_store, app_tree):
        def refuse(payload, ctx):
            return {"success": False, "error": "not allowed"}

        registry.register("refuse", refuse)
        app_tree["databases"][0]["schemas"][0]["tables"][2]["columns"][1]["pipeline"] = {
            "write": "refuse"
        }
        tables.use(config_store.load_dict(app_tree).document)

        with pytest.raises(ColumnTransformError):
            await tables.insert("block", {"id": "b1", "kind": "text"})
        assert tables.count("block") == 0


class TestForeignKeys:
    """Tests for cascade and restrict semantics."""

    @pytest.mark.asyncio
    async def test_delete_cascades(self, tables, events):
        await link_blocks(tables)
        events.clear()

        deleted = await tables.delete("block", "b1")

        assert deleted == 2
        assert tables.count("message_block") == 1
        assert [(e.table, e.kind) for e in events] == [
            ("block", "delete"),
            ("message_block", "delete"),
        ]

    @pytest.mark.asyncio
    async def test_delete_restricted(self, tables):
        linked = await link_blocks(tables)
        with pytest.raises(ConstraintViolationError, match="delete restricted"):
            await tables.delete("message", linked["id"])
        assert tables.count("message") == 1
        assert tables.count("message_block") == 2

    @pytest.mark.asyncio
    async def test_update_restricted(self, tables):
        await link_blocks(tables)
        with pytest.raises(ConstraintViolationError, match="update restricted"):
            await tables.update("block", "b1", {"id": "b9"})
        assert await tables.get("block", "b1") is not None
        assert await tables.get("block", "b9") is None

    @pytest.mark.asyncio
    async def test_update_cascades(self, tables, events):
        linked = await link_blocks(tables)
        events.clear()

        await tables.update("message", linked["id"], {"id": "m2"})

        assert await tables.get("message", linked["id"]) is None
        assert (await tables.get("message", "m2"))["body"] == "hello"
        children = await tables.select("message_block", {"message_id": "m2"})
        assert len(children) == 2
        assert [e.kind for e in events] == ["update", "update", "update"]
        assert events[0].primary_key == "m2"

    @pytest.mark.asyncio
    async def test_update_of_unreferenced_column(self, tables):
        await link_blocks(tables)
        updated = await tables.update("block", "b1", {"kind": "quote"})
        assert updated == {"id": "b1", "kind": "quote"}

    @pytest.mark.asyncio
    async def test_delete_missing_row(self, tables):
        assert await tables.delete("block", "nope") == 0

    @pytest.mark.asyncio
    async def test_update_missing_row(self, tables):
        with pytest.raises(ConduitError):
            await tables.update("block", "nope", {"kind": "x"})


class TestEvents:
    """Tests for storage events."""

    @pytest.mark.asyncio
    async def test_insert_event(self, tables, events):
        team = await tables.insert("team", {"name": "Core"}, user_id="u1")

        assert len(events) == 1
        event = events[0]
        assert event.table == "team"
        assert event.primary_key == team["id"]
        assert event.user_id == "u1"
        assert event.is_insert and not event.is_update and not event.is_delete
        assert event.as_args()["event"] == "insert"

    @pytest.mark.asyncio
    async def test_no_listener(self, config_store):
        tables = TableStore(config_store.current().document)
        row = await tables.insert("block", {"id": "b1"})
        assert row == {"id": "b1"}
