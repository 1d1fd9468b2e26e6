"""
Store interface — predicate-filtered select / insert / update over named
relations.

Every backend (in-memory, SQLAlchemy) speaks plain dict rows so the
domain layer never touches ORM objects. Filters are equality / range /
null / membership predicates on indexed columns, plus ``contains`` for
the contacts_notified array.

Errors:
    StoreError               base class, anything the backend rejects
    StoreAuthorizationError  row-level policy refused the write
    StoreUnavailableError    connectivity problem, safe to retry
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

Row = Dict[str, Any]


# ═══════════════════════════════════════════════════════════════════════════
# Errors
# ═══════════════════════════════════════════════════════════════════════════

class StoreError(Exception):
    """The backing store rejected an operation."""


class StoreAuthorizationError(StoreError):
    """Row-level access policy rejected the operation."""


class StoreUnavailableError(StoreError):
    """The store could not be reached."""


# ═══════════════════════════════════════════════════════════════════════════
# Predicates
# ═══════════════════════════════════════════════════════════════════════════

class Op(str, Enum):
    EQ       = "eq"
    NEQ      = "neq"
    GT       = "gt"
    GTE      = "gte"
    LT       = "lt"
    LTE      = "lte"
    IN       = "in"
    IS_NULL  = "is_null"
    NOT_NULL = "not_null"
    CONTAINS = "contains"  # array column holds value


@dataclass(frozen=True)
class Filter:
    column: str
    op: Op
    value: Any = None

    def matches(self, row: Row) -> bool:
        actual = row.get(self.column)
        if self.op == Op.IS_NULL:
            return actual is None
        if self.op == Op.NOT_NULL:
            return actual is not None
        if self.op == Op.EQ:
            return actual == self.value
        if self.op == Op.NEQ:
            return actual != self.value
        if self.op == Op.IN:
            return actual in self.value
        if self.op == Op.CONTAINS:
            return actual is not None and self.value in actual
        if actual is None:
            return False
        if self.op == Op.GT:
            return actual > self.value
        if self.op == Op.GTE:
            return actual >= self.value
        if self.op == Op.LT:
            return actual < self.value
        if self.op == Op.LTE:
            return actual <= self.value
        raise ValueError(f"Unsupported operator: {self.op}")


def eq(column: str, value: Any) -> Filter:
    return Filter(column, Op.EQ, value)


def neq(column: str, value: Any) -> Filter:
    return Filter(column, Op.NEQ, value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, Op.GT, value)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, Op.GTE, value)


def lt(column: str, value: Any) -> Filter:
    return Filter(column, Op.LT, value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, Op.LTE, value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, Op.IN, tuple(values))


def is_null(column: str) -> Filter:
    return Filter(column, Op.IS_NULL)


def not_null(column: str) -> Filter:
    return Filter(column, Op.NOT_NULL)


def contains(column: str, value: Any) -> Filter:
    return Filter(column, Op.CONTAINS, value)


def matches_all(row: Row, filters: Sequence[Filter]) -> bool:
    return all(f.matches(row) for f in filters)


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


def asc(column: str) -> Order:
    return Order(column)


def desc(column: str) -> Order:
    return Order(column, descending=True)


# ═══════════════════════════════════════════════════════════════════════════
# Backend Interface
# ═══════════════════════════════════════════════════════════════════════════

class StoreBackend(abc.ABC):
    """Relational store consumed by the alert layer."""

    name: str = "store"

    @abc.abstractmethod
    async def select(
        self,
        relation: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        """Return matching rows as dicts."""

    @abc.abstractmethod
    async def insert(self, relation: str, rows: Sequence[Row]) -> List[Row]:
        """Insert rows atomically; returns the stored rows."""

    @abc.abstractmethod
    async def update(
        self,
        relation: str,
        values: Row,
        filters: Sequence[Filter],
    ) -> List[Row]:
        """Apply ``values`` to every matching row; returns the updated rows."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
