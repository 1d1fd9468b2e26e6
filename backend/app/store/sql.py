"""
SQLAlchemy async store backend.

Statements are built by pure functions (``build_select``, ``build_insert``,
``build_update``) so they can be compiled and inspected without a live
database; ``SqlStoreBackend`` executes them in a short transaction per call.

Driver errors are mapped onto the store taxonomy:
    connectivity (OperationalError, InterfaceError, OSError) → StoreUnavailableError
    insufficient privilege / row-level security               → StoreAuthorizationError
    anything else from the DBAPI                              → StoreError
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy import Table, and_, insert, select, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import ColumnElement

from backend.app.store.base import (
    Filter,
    Op,
    Order,
    Row,
    StoreAuthorizationError,
    StoreBackend,
    StoreError,
    StoreUnavailableError,
)
from backend.app.store.tables import TABLES

logger = logging.getLogger(__name__)

# SQLSTATE 42501 = insufficient_privilege (includes RLS violations)
_PRIVILEGE_MARKERS = ("42501", "permission denied", "row-level security")


# ═══════════════════════════════════════════════════════════════════════════
# Statement Builders
# ═══════════════════════════════════════════════════════════════════════════

def get_table(relation: str) -> Table:
    try:
        return TABLES[relation]
    except KeyError:
        raise StoreError(f"Unknown relation: {relation}") from None


def _clause(table: Table, f: Filter) -> ColumnElement:
    col = table.c[f.column]
    if f.op == Op.EQ:
        return col == f.value
    if f.op == Op.NEQ:
        return col != f.value
    if f.op == Op.GT:
        return col > f.value
    if f.op == Op.GTE:
        return col >= f.value
    if f.op == Op.LT:
        return col < f.value
    if f.op == Op.LTE:
        return col <= f.value
    if f.op == Op.IN:
        return col.in_(list(f.value))
    if f.op == Op.IS_NULL:
        return col.is_(None)
    if f.op == Op.NOT_NULL:
        return col.is_not(None)
    if f.op == Op.CONTAINS:
        # JSONB @> '["value"]'
        return col.contains([f.value])
    raise StoreError(f"Unsupported operator: {f.op}")


def _where(table: Table, filters: Sequence[Filter]):
    clauses = [_clause(table, f) for f in filters]
    return and_(*clauses) if clauses else None


def build_select(
    relation: str,
    filters: Sequence[Filter] = (),
    order_by: Optional[Sequence[Order]] = None,
    limit: Optional[int] = None,
):
    table = get_table(relation)
    stmt = select(table)
    where = _where(table, filters)
    if where is not None:
        stmt = stmt.where(where)
    for order in order_by or []:
        col = table.c[order.column]
        stmt = stmt.order_by(col.desc() if order.descending else col.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


def build_insert(relation: str, rows: Sequence[Row]):
    table = get_table(relation)
    return insert(table).values([dict(r) for r in rows]).returning(*table.c)


def build_update(relation: str, values: Row, filters: Sequence[Filter]):
    table = get_table(relation)
    stmt = update(table).values(**values)
    where = _where(table, filters)
    if where is not None:
        stmt = stmt.where(where)
    return stmt.returning(*table.c)


def translate_error(exc: Exception) -> StoreError:
    """Map a driver/SQLAlchemy error onto the store error taxonomy."""
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return StoreUnavailableError(str(exc))
    text = str(getattr(exc, "orig", exc)).lower()
    if isinstance(exc, DBAPIError) and any(m in text for m in _PRIVILEGE_MARKERS):
        return StoreAuthorizationError(str(exc))
    return StoreError(str(exc))


# ═══════════════════════════════════════════════════════════════════════════
# Backend
# ═══════════════════════════════════════════════════════════════════════════

class SqlStoreBackend(StoreBackend):
    """Runs each operation in its own session and transaction."""

    name = "sql"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _execute(self, stmt, *, write: bool) -> List[Row]:
        try:
            async with self._session_factory() as session:
                if write:
                    async with session.begin():
                        result = await session.execute(stmt)
                        return [dict(r._mapping) for r in result]
                result = await session.execute(stmt)
                return [dict(r._mapping) for r in result]
        except (SQLAlchemyError, OSError) as exc:
            err = translate_error(exc)
            logger.warning("Store %s failed: %s", type(err).__name__, exc)
            raise err from exc

    async def select(
        self,
        relation: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        return await self._execute(
            build_select(relation, filters, order_by, limit), write=False,
        )

    async def insert(self, relation: str, rows: Sequence[Row]) -> List[Row]:
        if not rows:
            return []
        return await self._execute(build_insert(relation, rows), write=True)

    async def update(
        self,
        relation: str,
        values: Row,
        filters: Sequence[Filter],
    ) -> List[Row]:
        return await self._execute(build_update(relation, values, filters), write=True)

    async def ping(self) -> bool:
        try:
            await self._execute(build_select("alerts", limit=1), write=False)
            return True
        except StoreError:
            return False
