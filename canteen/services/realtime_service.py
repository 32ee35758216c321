from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

ORDERS_TABLE = 'orders'
ORDER_ITEMS_TABLE = 'order_items'
NOTIFICATIONS_TABLE = 'notifications'


class ChangeType(str, Enum):
    INSERT = 'insert'
    UPDATE = 'update'
    DELETE = 'delete'


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    event_type: ChangeType
    row: Mapping[str, Any]

    @property
    def row_id(self) -> Any:
        return self.row.get('id')


RowFilter = Callable[[Mapping[str, Any]], bool]
Callback = Callable[[ChangeEvent], None]


@dataclass
class Subscription:
    id: int
    table: str
    event_types: frozenset[ChangeType]
    callback: Callback
    row_filter: RowFilter | None = None
    _feed: ChangeFeed | None = field(default=None, repr=False)

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.event_type not in self.event_types:
            return False
        return self.row_filter is None or self.row_filter(event.row)

    @property
    def active(self) -> bool:
        return self._feed is not None

    def close(self) -> None:
        if self._feed is None:
            return
        self._feed._remove(self.id)
        self._feed = None


def equals_filter(column: str, value: Any) -> RowFilter:
    return lambda row: row.get(column) == value


class ChangeFeed:
    """In-process publish/subscribe channel per table.

    Events are delivered synchronously in publish order. A subscriber that
    raises is logged and skipped; the remaining subscribers still receive
    the event.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscriptions: dict[int, Subscription] = {}

    def subscribe(
        self,
        table: str,
        callback: Callback,
        *,
        event_types: Iterable[ChangeType | str] = tuple(ChangeType),
        row_filter: RowFilter | None = None,
    ) -> Subscription:
        with self._lock:
            subscription = Subscription(
                id=next(self._ids),
                table=table,
                event_types=frozenset(ChangeType(value) for value in event_types),
                callback=callback,
                row_filter=row_filter,
                _feed=self,
            )
            self._subscriptions[subscription.id] = subscription
        return subscription

    def _remove(self, subscription_id: int) -> None:
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> int:
        with self._lock:
            targets = [sub for sub in self._subscriptions.values() if sub.matches(event)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(event)
                delivered += 1
            except Exception:
                logger.exception('Change feed subscriber %s failed on %s %s', subscription.id, event.table, event.event_type.value)
        return delivered

    def publish_many(self, events: Iterable[ChangeEvent]) -> None:
        for event in events:
            self.publish(event)


def apply_order_event(orders_by_id: Mapping[Any, Mapping[str, Any]], event: ChangeEvent) -> dict[Any, dict[str, Any]]:
    """Fold one orders/order_items change into a local order view.

    Pure: returns a new mapping. Events are treated as upserts keyed by id,
    so redelivery is harmless and an item may arrive before its order.
    """
    state = {order_id: dict(order) for order_id, order in orders_by_id.items()}

    if event.table == ORDERS_TABLE:
        order_id = event.row_id
        if event.event_type == ChangeType.DELETE:
            state.pop(order_id, None)
            return state
        existing = state.get(order_id, {})
        merged = {**existing, **{key: value for key, value in event.row.items() if key != 'items'}}
        merged['items'] = list(existing.get('items', []))
        for item in event.row.get('items', []) or []:
            merged['items'] = _upsert_item(merged['items'], item)
        state[order_id] = merged
        return state

    if event.table == ORDER_ITEMS_TABLE:
        order_id = event.row.get('order_id')
        order = state.get(order_id, {'id': order_id, 'items': []})
        items = list(order.get('items', []))
        if event.event_type == ChangeType.DELETE:
            items = [item for item in items if item.get('id') != event.row_id]
        else:
            items = _upsert_item(items, event.row)
        state[order_id] = {**order, 'items': items}
        return state

    return state


def _upsert_item(items: list[Mapping[str, Any]], row: Mapping[str, Any]) -> list[dict[str, Any]]:
    updated: list[dict[str, Any]] = []
    replaced = False
    for item in items:
        if item.get('id') == row.get('id'):
            updated.append({**item, **row})
            replaced = True
        else:
            updated.append(dict(item))
    if not replaced:
        updated.append(dict(row))
    return updated
