"""
In-memory store backend — dict-of-lists relations for development and tests.

Writes are applied under a single asyncio lock so a multi-row insert is
visible all at once. An optional ``policy`` callable emulates row-level
authorization:

    def policy(operation: str, relation: str, row: Row) -> bool: ...

Returning False for an update raises StoreAuthorizationError, which is
what a row-level-secured relational store reports to the client.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Callable, Dict, List, Optional, Sequence

from backend.app.store.base import (
    Filter,
    Order,
    Row,
    StoreAuthorizationError,
    StoreBackend,
    StoreError,
    StoreUnavailableError,
    matches_all,
)

logger = logging.getLogger(__name__)

Policy = Callable[[str, str, Row], bool]

# Primary key columns per relation; responses use a composite key
PRIMARY_KEYS: Dict[str, tuple] = {
    "alerts": ("id",),
    "contacts": ("id",),
    "responses": ("alert_id", "contact_user_id"),
    "location_samples": ("id",),
    "invites": ("id",),
    "push_subscriptions": ("user_id", "endpoint"),
}


class InMemoryStoreBackend(StoreBackend):
    """Process-local store; rows are deep-copied in and out."""

    name = "memory"

    def __init__(self, policy: Optional[Policy] = None):
        self._tables: Dict[str, List[Row]] = {name: [] for name in PRIMARY_KEYS}
        self._lock = asyncio.Lock()
        self.policy = policy
        self.available = True

    def _table(self, relation: str) -> List[Row]:
        if relation not in self._tables:
            raise StoreError(f"Unknown relation: {relation}")
        return self._tables[relation]

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("in-memory store marked unavailable")

    def _allowed(self, operation: str, relation: str, row: Row) -> bool:
        return self.policy is None or self.policy(operation, relation, row)

    async def select(
        self,
        relation: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[Sequence[Order]] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        self._check_available()
        rows = [r for r in self._table(relation) if matches_all(r, filters)]
        rows = [r for r in rows if self._allowed("select", relation, r)]
        # Stable multi-key sort: apply keys from last to first
        for order in reversed(order_by or []):
            rows.sort(
                key=lambda r, c=order.column: (r.get(c) is None, r.get(c)),
                reverse=order.descending,
            )
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, relation: str, rows: Sequence[Row]) -> List[Row]:
        self._check_available()
        table = self._table(relation)
        keys = PRIMARY_KEYS[relation]
        async with self._lock:
            existing = {tuple(r.get(k) for k in keys) for r in table}
            staged: List[Row] = []
            for row in rows:
                if not self._allowed("insert", relation, row):
                    raise StoreAuthorizationError(f"insert into {relation} denied")
                key = tuple(row.get(k) for k in keys)
                if key in existing:
                    raise StoreError(f"Duplicate key {key} in {relation}")
                existing.add(key)
                staged.append(copy.deepcopy(dict(row)))
            table.extend(staged)
        return copy.deepcopy(staged)

    async def update(
        self,
        relation: str,
        values: Row,
        filters: Sequence[Filter],
    ) -> List[Row]:
        self._check_available()
        table = self._table(relation)
        async with self._lock:
            targets = [r for r in table if matches_all(r, filters)]
            for row in targets:
                if not self._allowed("update", relation, row):
                    raise StoreAuthorizationError(f"update on {relation} denied")
            for row in targets:
                row.update(copy.deepcopy(values))
        return copy.deepcopy(targets)

    async def ping(self) -> bool:
        return self.available

    def count(self, relation: str) -> int:
        return len(self._table(relation))
