"""
In-process insert feed.

Stores publish every inserted row here; chat clients subscribe with a
table name and an equality filter. Delivery is at-least-once from the
subscriber's point of view and callbacks run on the publishing thread.
"""
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

InsertCallback = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class Subscription:
    id: int
    table: str
    filter: Dict[str, Any] = field(default_factory=dict)

    def matches(self, table: str, row: Dict[str, Any]) -> bool:
        return table == self.table and all(row.get(k) == v for k, v in self.filter.items())


class LiveFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subs: Dict[int, tuple] = {}

    def subscribe(self, table: str, filter: Dict[str, Any], on_insert: InsertCallback) -> Subscription:
        sub = Subscription(id=next(self._ids), table=table, filter=dict(filter))
        with self._lock:
            self._subs[sub.id] = (sub, on_insert)
        logger.debug("feed_subscribe sub=%s table=%s filter=%s", sub.id, table, filter)
        return sub

    def unsubscribe(self, handle: Subscription) -> bool:
        with self._lock:
            removed = self._subs.pop(handle.id, None) is not None
        logger.debug("feed_unsubscribe sub=%s removed=%s", handle.id, removed)
        return removed

    def active(self) -> List[Subscription]:
        with self._lock:
            return [sub for sub, _ in self._subs.values()]

    def publish(self, table: str, row: Dict[str, Any]) -> int:
        with self._lock:
            targets = [cb for sub, cb in self._subs.values() if sub.matches(table, row)]
        delivered = 0
        for cb in targets:
            try:
                cb(dict(row))
                delivered += 1
            except Exception:
                # a broken subscriber must not fail the writer
                logger.exception("feed_callback_failed table=%s", table)
        return delivered
