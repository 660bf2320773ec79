"""Keyed upsert / insert / range-read primitives over the shared store.

Every component talks to the database through these few operations so that
concurrent writers only ever rely on the database's own guarantees:

- ``upsert``: ``INSERT ... ON CONFLICT (key) DO UPDATE``, last write wins per key
- ``insert``: plain append (alerts, news)
- ``select`` / ``select_all`` / ``select_in``: range-paginated and chunked reads
- ``update``: set columns on the rows matching a filter (IPO refresh, average volume)
- ``delete``: predicate delete (stale watch-list rows)

Rows are plain dicts keyed by column *name* (``"float"``, not the ORM
attribute). Only the columns present in a row are written, so an upsert that
carries ``{ticker, price, last_updated}`` leaves every other column untouched.
"""

from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from loguru import logger
from sqlalchemy import Column, ColumnElement, delete, select, update
from sqlalchemy import Table as SATable
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.database.models import Base

Row = dict[str, Any]


class StoreError(Exception):
    """A store operation failed (connection, constraint, unknown table/column)."""


class Store:
    """
    Thin table-name based access layer on top of an async SQLAlchemy engine.

    Supports PostgreSQL (production) and SQLite (tests) for the conflict-aware
    upsert.
    """

    def __init__(self, engine: AsyncEngine):
        self._engine = engine
        self._tables = Base.metadata.tables
        dialect = engine.dialect.name
        if dialect == "postgresql":
            self._insert_factory = pg_insert
        elif dialect == "sqlite":
            self._insert_factory = sqlite_insert
        else:
            raise StoreError(f"Unsupported database dialect for upserts: {dialect}")

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Schema helpers
    # ------------------------------------------------------------------

    def table(self, name: Table | str) -> SATable:
        """Resolve a logical table name to its SQLAlchemy table."""
        key = name.value if isinstance(name, Table) else name
        try:
            return self._tables[key]
        except KeyError:
            raise StoreError(f"Unknown table: {key}") from None

    def column(self, table: Table | str, name: str) -> Column:
        """Resolve a column by its database name."""
        t = self.table(table)
        for col in t.columns:
            if col.name == name:
                return col
        raise StoreError(f"Unknown column {name!r} on table {t.name}")

    def _row_params(self, t: SATable, row: Mapping[str, Any]) -> Row:
        # bind parameters are keyed by Column.key, which can differ from the name
        return {self.column(t.name, name).key: value for name, value in row.items()}

    def _where(self, t: SATable, where: Mapping[str, Any] | None) -> list[ColumnElement]:
        clauses: list[ColumnElement] = []
        for name, value in (where or {}).items():
            col = self.column(t.name, name)
            if isinstance(value, list | tuple | set | frozenset):
                clauses.append(col.in_(list(value)))
            elif value is None:
                clauses.append(col.is_(None))
            else:
                clauses.append(col == value)
        return clauses

    # ------------------------------------------------------------------
    # Write primitives
    # ------------------------------------------------------------------

    async def upsert(
        self,
        table: Table | str,
        rows: Sequence[Mapping[str, Any]],
        conflict_key: str = "ticker",
    ) -> int:
        """
        Insert rows, updating the supplied columns when ``conflict_key`` exists.

        Rows with different column sets are written in separate statements so
        that a partial row never nulls out columns it does not carry.

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        t = self.table(table)
        key_col = self.column(t.name, conflict_key)

        groups: dict[tuple[str, ...], list[Mapping[str, Any]]] = {}
        for row in rows:
            if conflict_key not in row:
                raise StoreError(f"Row for {t.name} is missing conflict key {conflict_key!r}")
            groups.setdefault(tuple(sorted(row)), []).append(row)

        try:
            async with self._engine.begin() as conn:
                for names, group in groups.items():
                    stmt = self._insert_factory(t)
                    update_cols = [self.column(t.name, n) for n in names if n != conflict_key]
                    if update_cols:
                        stmt = stmt.on_conflict_do_update(
                            index_elements=[key_col],
                            set_={col: stmt.excluded[col.key] for col in update_cols},
                        )
                    else:
                        stmt = stmt.on_conflict_do_nothing(index_elements=[key_col])
                    await conn.execute(stmt, [self._row_params(t, r) for r in group])
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Upsert into {t.name} failed ({len(rows)} rows): {e}") from e

        logger.debug(f"Upserted {len(rows)} rows into {t.name}")
        return len(rows)

    async def insert(self, table: Table | str, rows: Sequence[Mapping[str, Any]]) -> int:
        """Append rows. Returns the number of rows written."""
        if not rows:
            return 0

        t = self.table(table)
        try:
            async with self._engine.begin() as conn:
                await conn.execute(t.insert(), [self._row_params(t, r) for r in rows])
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Insert into {t.name} failed ({len(rows)} rows): {e}") from e

        logger.debug(f"Inserted {len(rows)} rows into {t.name}")
        return len(rows)

    async def update(
        self,
        table: Table | str,
        values: Mapping[str, Any],
        where: Mapping[str, Any],
        *clauses: ColumnElement,
    ) -> int:
        """Set ``values`` on every row matching ``where``. Returns the affected row count."""
        t = self.table(table)
        filters = [*self._where(t, where), *clauses]
        if not filters:
            raise StoreError(f"Refusing to update every row of {t.name}")
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    update(t).where(*filters).values(self._row_params(t, values))
                )
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Update of {t.name} failed: {e}") from e
        return result.rowcount or 0

    async def delete(self, table: Table | str, *clauses: ColumnElement) -> int:
        """Delete rows matching all clauses. Returns the affected row count."""
        t = self.table(table)
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(delete(t).where(*clauses))
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Delete from {t.name} failed: {e}") from e
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Read primitives
    # ------------------------------------------------------------------

    async def select(
        self,
        table: Table | str,
        columns: Sequence[str] | None = None,
        where: Mapping[str, Any] | None = None,
        *clauses: ColumnElement,
        offset: int | None = None,
        limit: int | None = None,
    ) -> list[Row]:
        """
        Read rows as dicts keyed by column name.

        Args:
            table: Logical table name
            columns: Column names to return (all columns if None)
            where: Equality filters; list/tuple/set values become IN (...)
            clauses: Extra SQLAlchemy predicates, ANDed together
            offset: Range start (rows are ordered by primary key when paging)
            limit: Range length
        """
        t = self.table(table)
        cols = [self.column(t.name, c) for c in columns] if columns else list(t.columns)
        query = select(*[c.label(c.name) for c in cols]).where(*self._where(t, where), *clauses)
        if offset is not None or limit is not None:
            query = query.order_by(*t.primary_key.columns)
        if offset is not None:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)

        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(query)
                return [dict(r._mapping) for r in result]
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Select from {t.name} failed: {e}") from e

    async def select_all(
        self,
        table: Table | str,
        columns: Sequence[str] | None = None,
        where: Mapping[str, Any] | None = None,
        *clauses: ColumnElement,
        page_size: int = IngestConstants.PAGE_SIZE,
    ) -> list[Row]:
        """Read every matching row in ranges of ``page_size``.

        Paging stops at the first page shorter than ``page_size``.
        """
        rows: list[Row] = []
        offset = 0
        while True:
            page = await self.select(
                table, columns, where, *clauses, offset=offset, limit=page_size
            )
            rows.extend(page)
            if len(page) < page_size:
                break
            offset += page_size
        return rows

    async def select_in(
        self,
        table: Table | str,
        columns: Sequence[str],
        key: str,
        values: Iterable[Any],
        chunk_size: int = IngestConstants.PAGE_SIZE,
    ) -> list[Row]:
        """Read rows whose ``key`` is in ``values``, at most ``chunk_size`` keys per query."""
        keys = list(values)
        rows: list[Row] = []
        for start in range(0, len(keys), chunk_size):
            chunk = keys[start : start + chunk_size]
            rows.extend(await self.select(table, columns, {key: chunk}))
        return rows
