from __future__ import annotations

import unittest

from canteen.services.realtime_service import (
    NOTIFICATIONS_TABLE,
    ORDER_ITEMS_TABLE,
    ORDERS_TABLE,
    ChangeEvent,
    ChangeFeed,
    ChangeType,
    apply_order_event,
    equals_filter,
)


class ChangeFeedTests(unittest.TestCase):
    def test_delivers_matching_events_in_order(self) -> None:
        feed = ChangeFeed()
        received = []
        feed.subscribe(ORDERS_TABLE, received.append, event_types=[ChangeType.INSERT])

        feed.publish(ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1}))
        feed.publish(ChangeEvent(ORDERS_TABLE, ChangeType.UPDATE, {'id': 1}))
        feed.publish(ChangeEvent(NOTIFICATIONS_TABLE, ChangeType.INSERT, {'id': 5}))
        feed.publish(ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 2}))

        self.assertEqual([event.row_id for event in received], [1, 2])

    def test_row_filter_scopes_by_user(self) -> None:
        feed = ChangeFeed()
        received = []
        feed.subscribe(NOTIFICATIONS_TABLE, received.append, row_filter=equals_filter('user_id', 7))

        feed.publish(ChangeEvent(NOTIFICATIONS_TABLE, ChangeType.INSERT, {'id': 1, 'user_id': 7}))
        feed.publish(ChangeEvent(NOTIFICATIONS_TABLE, ChangeType.INSERT, {'id': 2, 'user_id': 8}))

        self.assertEqual([event.row_id for event in received], [1])

    def test_failing_subscriber_does_not_starve_others(self) -> None:
        feed = ChangeFeed()
        received = []

        def broken(_event: ChangeEvent) -> None:
            raise RuntimeError('boom')

        feed.subscribe(ORDERS_TABLE, broken)
        feed.subscribe(ORDERS_TABLE, received.append)

        with self.assertLogs('canteen.services.realtime_service', level='ERROR'):
            delivered = feed.publish(ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1}))

        self.assertEqual(delivered, 1)
        self.assertEqual(len(received), 1)

    def test_close_stops_delivery(self) -> None:
        feed = ChangeFeed()
        received = []
        subscription = feed.subscribe(ORDERS_TABLE, received.append)
        self.assertEqual(feed.subscriber_count, 1)

        subscription.close()
        subscription.close()
        feed.publish(ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1}))

        self.assertFalse(subscription.active)
        self.assertEqual(feed.subscriber_count, 0)
        self.assertEqual(received, [])


class ApplyOrderEventTests(unittest.TestCase):
    def test_insert_then_update_merges(self) -> None:
        state = apply_order_event({}, ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1, 'status': 'pending'}))
        state = apply_order_event(state, ChangeEvent(ORDERS_TABLE, ChangeType.UPDATE, {'id': 1, 'status': 'accepted'}))
        self.assertEqual(state[1]['status'], 'accepted')
        self.assertEqual(state[1]['items'], [])

    def test_does_not_mutate_input(self) -> None:
        original = {1: {'id': 1, 'status': 'pending', 'items': []}}
        apply_order_event(original, ChangeEvent(ORDERS_TABLE, ChangeType.UPDATE, {'id': 1, 'status': 'packed'}))
        self.assertEqual(original[1]['status'], 'pending')

    def test_item_before_order_creates_placeholder(self) -> None:
        item = {'id': 10, 'order_id': 1, 'product_name': 'Tea', 'item_status': 'active'}
        state = apply_order_event({}, ChangeEvent(ORDER_ITEMS_TABLE, ChangeType.INSERT, item))
        state = apply_order_event(state, ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1, 'status': 'pending'}))

        self.assertEqual(state[1]['status'], 'pending')
        self.assertEqual([entry['id'] for entry in state[1]['items']], [10])

    def test_redelivered_item_is_upserted(self) -> None:
        item = {'id': 10, 'order_id': 1, 'item_status': 'active'}
        state = apply_order_event({}, ChangeEvent(ORDERS_TABLE, ChangeType.INSERT, {'id': 1, 'items': [item]}))
        state = apply_order_event(state, ChangeEvent(ORDER_ITEMS_TABLE, ChangeType.INSERT, item))
        state = apply_order_event(
            state, ChangeEvent(ORDER_ITEMS_TABLE, ChangeType.UPDATE, {**item, 'item_status': 'out_of_stock'})
        )

        self.assertEqual(len(state[1]['items']), 1)
        self.assertEqual(state[1]['items'][0]['item_status'], 'out_of_stock')

    def test_delete_removes_order(self) -> None:
        state = {1: {'id': 1, 'items': []}, 2: {'id': 2, 'items': []}}
        state = apply_order_event(state, ChangeEvent(ORDERS_TABLE, ChangeType.DELETE, {'id': 1}))
        self.assertEqual(list(state), [2])


if __name__ == '__main__':
    unittest.main()
