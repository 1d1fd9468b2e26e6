"""
Row-change events carried by the event channel.

A RowChange is what a subscriber receives for every insert / update on a
relation: ``{kind, table, before?, after?}``. Delivery is at-most-once;
consumers must tolerate loss and duplicates.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ANY    = "*"

    def accepts(self, kind: "EventKind") -> bool:
        return self == EventKind.ANY or self == kind


class ChannelStatus(str, Enum):
    """Subscription states reported to status callbacks."""
    CONNECTING    = "CONNECTING"
    SUBSCRIBED    = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT     = "TIMED_OUT"
    CLOSED        = "CLOSED"
    GAVE_UP       = "GAVE_UP"  # reconnect attempts exhausted

    @property
    def is_failure(self) -> bool:
        return self in (
            ChannelStatus.CHANNEL_ERROR,
            ChannelStatus.TIMED_OUT,
            ChannelStatus.CLOSED,
        )


def _jsonable(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {
        k: v.isoformat() if isinstance(v, datetime) else v
        for k, v in row.items()
    }


@dataclass
class RowChange:
    kind: EventKind
    table: str
    after: Optional[Dict[str, Any]] = None
    before: Optional[Dict[str, Any]] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def row(self) -> Dict[str, Any]:
        """The row the predicate is evaluated against (after, else before)."""
        return self.after if self.after is not None else (self.before or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "table": self.table,
            "after": _jsonable(self.after),
            "before": _jsonable(self.before),
            "meta": self.meta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RowChange":
        return cls(
            kind=EventKind(data["kind"]),
            table=data["table"],
            after=data.get("after"),
            before=data.get("before"),
            meta=data.get("meta") or {},
        )
