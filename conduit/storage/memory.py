"""
In-memory reference table store.

A small storage engine that honours everything the configuration says
about tables, so endpoint and job pipelines can be exercised end to end
without a database:

    - column defaults (ULID, Sqid, Snowflake)
    - write / read / args column transforms
    - not-null, primary key, unique columns and UNIQUE constraints
    - foreign keys with on_delete / on_update CASCADE or RESTRICT
    - a StorageEvent after every committed row change

Rows are stored post-write-transform; reads return post-read-transform
copies. Predicate values run through the args phase before comparison.

Usage:
    store = TableStore(document, columns=columns, on_event=router.dispatch)
    team = await store.insert("team", {"name": "Core"})
    await store.delete("team", team["id"])
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from conduit.config.schemas import (
    Constraint,
    ConstraintAction,
    ConstraintKind,
    Document,
    Table,
)
from conduit.errors import ConduitError, ConstraintViolationError
from conduit.events.router import StorageEvent

from .columns import ColumnTransformPipeline
from .ids import IdGenerators

logger = logging.getLogger(__name__)

EventListener = Callable[[StorageEvent], Awaitable[Any]]

Row = dict[str, Any]


@dataclass
class _Change:
    table: str
    key: Any
    kind: str
    row: Row | None = None


@dataclass
class _Plan:
    changes: list[_Change] = field(default_factory=list)

    def touches(self, table: str, key: Any) -> bool:
        return any(c.table == table and c.key == key for c in self.changes)


class TableStore:
    """
    Async in-memory storage engine for configured tables.

    Mutations are serialized by one lock. Events are emitted after the lock
    is released, in commit order.
    """

    def __init__(
        self,
        document: Document,
        *,
        columns: ColumnTransformPipeline | None = None,
        ids: IdGenerators | None = None,
        on_event: EventListener | None = None,
    ):
        self.document = document
        self.columns = columns
        self.ids = ids or IdGenerators()
        self.on_event = on_event
        self._rows: dict[str, dict[Any, Row]] = {}
        self._rowids = itertools.count(1)
        self._lock = asyncio.Lock()

    def use(self, document: Document) -> None:
        """Switch to a newer configuration; stored rows are kept."""
        self.document = document

    # =========================================================================
    # Lookup helpers
    # =========================================================================

    def table(self, name: str) -> Table:
        table = self.document.table(name)
        if table is None:
            raise ConduitError(f"Unknown table '{name}'")
        return table

    def _data(self, table: Table) -> dict[Any, Row]:
        return self._rows.setdefault(table.name, {})

    def _key(self, table: Table, row: Row) -> Any:
        pk = table.primary_key
        if not pk:
            return None
        if len(pk) == 1:
            return row.get(pk[0])
        return tuple(row.get(c) for c in pk)

    def _referencing(self, table: Table) -> list[tuple[Table, Constraint]]:
        """Foreign keys in any table that point at `table`."""
        refs = []
        for _, _, other in self.document.iter_tables():
            for fk in other.foreign_keys:
                if any(target == table.name for _, target, _ in fk.references()):
                    refs.append((other, fk))
        return refs

    @staticmethod
    def _points_at(child: Row, fk: Constraint, parent: Row) -> bool:
        for local, _, target in fk.references():
            value = child.get(local)
            if value is None or value != parent.get(target):
                return False
        return True

    def count(self, table: str) -> int:
        return len(self._rows.get(table, {}))

    # =========================================================================
    # Reads
    # =========================================================================

    async def _surface(self, table: Table, row: Row) -> Row:
        if self.columns is None:
            return dict(row)
        return await self.columns.read_row(table, row)

    async def get(self, table_name: str, key: Any) -> Row | None:
        table = self.table(table_name)
        row = self._data(table).get(key)
        return await self._surface(table, row) if row is not None else None

    async def select(self, table_name: str, where: Row | None = None) -> list[Row]:
        """Rows whose columns equal every predicate value (after the args phase)."""
        table = self.table(table_name)
        predicates = {}
        for name, value in (where or {}).items():
            if table.column(name) is None:
                raise ConduitError(f"Unknown column '{table_name}.{name}'")
            if self.columns is not None:
                value = await self.columns.args_value(table, name, value)
            predicates[name] = value

        matches = [
            row
            for row in self._data(table).values()
            if all(row.get(k) == v for k, v in predicates.items())
        ]
        return [await self._surface(table, row) for row in matches]

    # =========================================================================
    # Validation
    # =========================================================================

    def _check_columns(self, table: Table, row: Row) -> None:
        unknown = [name for name in row if table.column(name) is None]
        if unknown:
            raise ConduitError(f"Unknown columns for '{table.name}': {', '.join(unknown)}")

    def _check_row(self, table: Table, row: Row, key: Any, replacing: Any = None) -> None:
        for column in table.columns:
            if (column.primary_key or not column.nullable) and row.get(column.name) is None:
                raise ConstraintViolationError(table.name, column.name, "value is required")

        others = [
            (k, existing) for k, existing in self._data(table).items() if k != replacing
        ]
        if table.primary_key and any(k == key for k, _ in others):
            raise ConstraintViolationError(table.name, "primary_key", f"duplicate key {key!r}")

        unique_sets = [(c.name, (c.name,)) for c in table.columns if c.unique]
        unique_sets += [
            (c.name, c.columns) for c in table.constraints if c.kind == ConstraintKind.UNIQUE
        ]
        for name, cols in unique_sets:
            values = tuple(row.get(c) for c in cols)
            if any(v is None for v in values):
                continue
            for _, existing in others:
                if tuple(existing.get(c) for c in cols) == values:
                    raise ConstraintViolationError(
                        table.name, name, f"duplicate value for ({', '.join(cols)})"
                    )

        for fk in table.foreign_keys:
            self._check_foreign_key(table, fk, row)

    def _check_foreign_key(self, table: Table, fk: Constraint, row: Row) -> None:
        refs = fk.references()
        if all(row.get(local) is None for local, _, _ in refs):
            return
        target = self.table(refs[0][1])
        if not any(self._points_at(row, fk, parent) for parent in self._data(target).values()):
            raise ConstraintViolationError(
                table.name, fk.name, f"no matching row in '{target.name}'"
            )

    # =========================================================================
    # Writes
    # =========================================================================

    def _apply_defaults(self, table: Table, row: Row) -> Row:
        result = dict(row)
        for column in table.columns:
            if result.get(column.name) is None:
                generated = self.ids.generate(column.default)
                if generated is not None:
                    result[column.name] = generated
        return result

    async def _persistable(self, table: Table, row: Row) -> Row:
        if self.columns is None:
            return dict(row)
        return await self.columns.write_row(table, row)

    async def insert(self, table_name: str, row: Row, *, user_id: str | None = None) -> Row:
        """
        Insert a row and return it as a reader would see it.

        Raises:
            ColumnTransformError: If a write transform fails
            ConstraintViolationError: If the row breaks a constraint
        """
        table = self.table(table_name)
        self._check_columns(table, row)
        stored = await self._persistable(table, self._apply_defaults(table, row))

        async with self._lock:
            key = self._key(table, stored)
            self._check_row(table, stored, key)
            if key is None:
                key = next(self._rowids)
            self._data(table)[key] = stored

        logger.debug(f"Inserted {table.name}[{key!r}]")
        await self._emit([_Change(table.name, key, "insert", stored)], user_id)
        return await self._surface(table, stored)

    async def update(
        self, table_name: str, key: Any, changes: Row, *, user_id: str | None = None
    ) -> Row:
        """
        Apply changes to one row, cascading or restricting on referenced columns.

        Raises:
            ConduitError: If the row does not exist
            ConstraintViolationError: On a constraint or RESTRICT violation
        """
        table = self.table(table_name)
        self._check_columns(table, changes)
        written = await self._persistable(table, changes)

        async with self._lock:
            current = self._data(table).get(key)
            if current is None:
                raise ConduitError(f"No row {key!r} in '{table.name}'")
            updated = {**current, **written}
            new_key = self._key(table, updated)
            if new_key is None:
                new_key = key
            self._check_row(table, updated, new_key, replacing=key)

            plan = _Plan()
            plan.changes.append(_Change(table.name, key, "update", updated))
            self._plan_update(table, current, updated, plan)
            self._commit(plan)

        await self._emit(plan.changes, user_id)
        return await self._surface(table, updated)

    def _plan_update(self, table: Table, old: Row, new: Row, plan: _Plan) -> None:
        for child_table, fk in self._referencing(table):
            targets = [target for _, _, target in fk.references()]
            if all(old.get(t) == new.get(t) for t in targets):
                continue
            for child_key, child in self._data(child_table).items():
                if plan.touches(child_table.name, child_key):
                    continue
                if not self._points_at(child, fk, old):
                    continue
                if fk.update_action == ConstraintAction.RESTRICT:
                    raise ConstraintViolationError(
                        child_table.name,
                        fk.name,
                        f"{table.name} row is referenced; update restricted",
                    )
                moved = dict(child)
                for local, _, target in fk.references():
                    moved[local] = new.get(target)
                plan.changes.append(_Change(child_table.name, child_key, "update", moved))
                self._plan_update(child_table, child, moved, plan)

    async def delete(self, table_name: str, key: Any, *, user_id: str | None = None) -> int:
        """
        Delete one row and, per foreign key actions, the rows referencing it.

        Returns:
            Number of rows deleted, cascades included

        Raises:
            ConstraintViolationError: If a RESTRICT foreign key still references the row
        """
        table = self.table(table_name)
        async with self._lock:
            row = self._data(table).get(key)
            if row is None:
                return 0
            plan = _Plan()
            plan.changes.append(_Change(table.name, key, "delete", row))
            self._plan_delete(table, row, plan)
            self._commit(plan)

        await self._emit(plan.changes, user_id)
        return len(plan.changes)

    def _plan_delete(self, table: Table, row: Row, plan: _Plan) -> None:
        for child_table, fk in self._referencing(table):
            for child_key, child in self._data(child_table).items():
                if plan.touches(child_table.name, child_key):
                    continue
                if not self._points_at(child, fk, row):
                    continue
                if fk.delete_action == ConstraintAction.RESTRICT:
                    raise ConstraintViolationError(
                        child_table.name,
                        fk.name,
                        f"{table.name} row is referenced; delete restricted",
                    )
                plan.changes.append(_Change(child_table.name, child_key, "delete", child))
                self._plan_delete(child_table, child, plan)

    def _commit(self, plan: _Plan) -> None:
        for change in plan.changes:
            data = self._rows.setdefault(change.table, {})
            if change.kind == "delete":
                data.pop(change.key, None)
                continue
            new_key = self._key(self.table(change.table), change.row or {})
            if new_key is None:
                new_key = change.key
            if new_key != change.key:
                data.pop(change.key, None)
                change.key = new_key
            data[change.key] = change.row or {}

    async def _emit(self, changes: list[_Change], user_id: str | None) -> None:
        if self.on_event is None:
            return
        for change in changes:
            event = StorageEvent(
                table=change.table,
                primary_key=change.key,
                user_id=user_id,
                is_insert=change.kind == "insert",
                is_update=change.kind == "update",
                is_delete=change.kind == "delete",
            )
            await self.on_event(event)
