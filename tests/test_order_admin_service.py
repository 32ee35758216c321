from __future__ import annotations

import unittest
from decimal import Decimal
from unittest.mock import MagicMock

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from canteen.errors import InvalidTransitionError, ValidationError
from canteen.models import (
    AuditLog,
    Base,
    Notification,
    NotificationType,
    Order,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    PushSubscription,
    User,
    UserRole,
)
from canteen.services.order_admin_service import (
    cancel_order,
    change_order_status,
    compute_adjusted_amount,
    mark_items_out_of_stock,
    review_order,
)
from canteen.services.push_service import PushMessage, deliver_push
from canteen.services.realtime_service import NOTIFICATIONS_TABLE, ORDER_ITEMS_TABLE, ORDERS_TABLE, ChangeFeed, ChangeType


class OrderAdminServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self.db = self.session_factory()

        self.admin = User(email='admin@example.com', password_hash='x', role=UserRole.ADMIN, active=True)
        self.customer = User(email='customer@example.com', password_hash='x', role=UserRole.CUSTOMER, active=True)
        self.db.add_all([self.admin, self.customer])
        self.db.flush()

        self.order = Order(user_id=self.customer.id, total_amount=Decimal('250'), status=OrderStatus.PENDING)
        self.order.items.append(OrderItem(product_id=1, product_name='Tea', product_price=Decimal('50'), quantity=2))
        self.order.items.append(OrderItem(product_id=2, product_name='Thali', product_price=Decimal('150'), quantity=1))
        self.db.add(self.order)
        self.db.commit()
        self.tea, self.thali = self.order.items

    def tearDown(self) -> None:
        self.db.close()

    def _notifications(self) -> list[Notification]:
        return self.db.execute(select(Notification).order_by(Notification.id)).scalars().all()

    def test_status_change_notifies_customer(self) -> None:
        feed = ChangeFeed()
        received = []
        feed.subscribe(ORDERS_TABLE, received.append)
        feed.subscribe(NOTIFICATIONS_TABLE, received.append)

        change_order_status(
            self.db,
            order_id=self.order.id,
            new_status='accepted',
            actor_user_id=self.admin.id,
            feed=feed,
        )

        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)
        [notification] = self._notifications()
        self.assertEqual(notification.user_id, self.customer.id)
        self.assertEqual(notification.type, NotificationType.ORDER_ACCEPTED)
        self.assertEqual(notification.title, 'Order Accepted')
        self.assertEqual(notification.message, f'Your order #{self.order.id:06d} is now accepted.')
        self.assertFalse(notification.is_read)
        self.assertEqual([(event.table, event.event_type) for event in received], [
            (ORDERS_TABLE, ChangeType.UPDATE),
            (NOTIFICATIONS_TABLE, ChangeType.INSERT),
        ])

    def test_illegal_transition_writes_nothing(self) -> None:
        with self.assertRaises(InvalidTransitionError):
            change_order_status(
                self.db, order_id=self.order.id, new_status=OrderStatus.DELIVERED, actor_user_id=self.admin.id
            )
        self.db.rollback()

        self.assertEqual(self.db.get(Order, self.order.id).status, OrderStatus.PENDING)
        self.assertEqual(self._notifications(), [])
        self.assertEqual(self.db.execute(select(AuditLog)).scalars().all(), [])

    def test_terminal_orders_cannot_move(self) -> None:
        cancel_order(self.db, order_id=self.order.id, actor_user_id=self.admin.id)
        self.assertEqual(self.order.status, OrderStatus.CANCELLED)
        self.assertEqual(self._notifications()[0].type, NotificationType.ORDER_CANCELLED)

        with self.assertRaises(InvalidTransitionError):
            change_order_status(self.db, order_id=self.order.id, new_status='pending', actor_user_id=self.admin.id)
        with self.assertRaises(InvalidTransitionError):
            cancel_order(self.db, order_id=self.order.id, actor_user_id=self.admin.id)

    def test_unknown_order(self) -> None:
        with self.assertRaisesRegex(ValueError, 'Order not found'):
            change_order_status(self.db, order_id=999, new_status='accepted', actor_user_id=self.admin.id)

    def test_review_without_removals_accepts(self) -> None:
        review_order(self.db, order_id=self.order.id, out_of_stock_item_ids=set(), actor_user_id=self.admin.id)

        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)
        self.assertIsNone(self.order.adjusted_amount)
        [notification] = self._notifications()
        self.assertEqual(notification.type, NotificationType.ORDER_ACCEPTED)
        self.assertEqual(notification.message, f'Your order #{self.order.id:06d} has been accepted and is being prepared.')

    def test_review_with_out_of_stock_adjusts_total(self) -> None:
        feed = ChangeFeed()
        item_events = []
        feed.subscribe(ORDER_ITEMS_TABLE, item_events.append)

        review_order(
            self.db,
            order_id=self.order.id,
            out_of_stock_item_ids={self.tea.id},
            actor_user_id=self.admin.id,
            feed=feed,
        )

        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)
        self.assertEqual(self.order.adjusted_amount, Decimal('150'))
        self.assertEqual(self.order.total_amount, Decimal('250'))
        self.assertEqual(self.tea.item_status, OrderItemStatus.OUT_OF_STOCK)
        self.assertEqual(self.thali.item_status, OrderItemStatus.ACTIVE)
        [notification] = self._notifications()
        self.assertEqual(notification.type, NotificationType.ITEM_OUT_OF_STOCK)
        self.assertIn('Tea', notification.message)
        self.assertIn('₹150', notification.message)
        self.assertEqual([event.row['id'] for event in item_events], [self.tea.id])

    def test_review_cannot_remove_every_item(self) -> None:
        with self.assertRaises(ValidationError):
            review_order(
                self.db,
                order_id=self.order.id,
                out_of_stock_item_ids={self.tea.id, self.thali.id},
                actor_user_id=self.admin.id,
            )
        self.db.rollback()
        self.assertEqual(self.db.get(Order, self.order.id).status, OrderStatus.PENDING)
        self.assertEqual(self._notifications(), [])

    def test_review_rejects_foreign_items(self) -> None:
        with self.assertRaises(ValidationError):
            review_order(self.db, order_id=self.order.id, out_of_stock_item_ids={12345}, actor_user_id=self.admin.id)

    def test_mark_out_of_stock_after_acceptance(self) -> None:
        review_order(self.db, order_id=self.order.id, out_of_stock_item_ids=set(), actor_user_id=self.admin.id)
        mark_items_out_of_stock(self.db, order_id=self.order.id, item_ids={self.thali.id}, actor_user_id=self.admin.id)

        self.assertEqual(self.order.adjusted_amount, Decimal('100'))
        latest = self._notifications()[-1]
        self.assertEqual(latest.type, NotificationType.ITEM_OUT_OF_STOCK)
        self.assertIn('Thali', latest.message)

    def test_mark_out_of_stock_while_out_for_delivery(self) -> None:
        review_order(self.db, order_id=self.order.id, out_of_stock_item_ids=set(), actor_user_id=self.admin.id)
        change_order_status(self.db, order_id=self.order.id, new_status='packed', actor_user_id=self.admin.id)
        change_order_status(self.db, order_id=self.order.id, new_status='out_for_delivery', actor_user_id=self.admin.id)

        mark_items_out_of_stock(self.db, order_id=self.order.id, item_ids={self.tea.id}, actor_user_id=self.admin.id)

        self.assertEqual(self.order.status, OrderStatus.OUT_FOR_DELIVERY)
        self.assertEqual(self.order.adjusted_amount, Decimal('150'))

    def test_mark_out_of_stock_rejects_pending_and_terminal_orders(self) -> None:
        with self.assertRaises(ValidationError):
            mark_items_out_of_stock(self.db, order_id=self.order.id, item_ids={self.tea.id}, actor_user_id=self.admin.id)

        cancel_order(self.db, order_id=self.order.id, actor_user_id=self.admin.id)
        with self.assertRaises(ValidationError):
            mark_items_out_of_stock(self.db, order_id=self.order.id, item_ids={self.tea.id}, actor_user_id=self.admin.id)
        self.assertEqual(self.tea.item_status, OrderItemStatus.ACTIVE)

    def test_push_is_queued_after_commit(self) -> None:
        queued = []
        with self.assertRaises(InvalidTransitionError):
            change_order_status(
                self.db,
                order_id=self.order.id,
                new_status='delivered',
                actor_user_id=self.admin.id,
                schedule_push=queued.append,
            )
        self.assertEqual(queued, [])

        change_order_status(
            self.db,
            order_id=self.order.id,
            new_status='accepted',
            actor_user_id=self.admin.id,
            schedule_push=queued.append,
        )

        [message] = queued
        self.assertEqual(message.user_id, self.customer.id)
        self.assertEqual(message.title, 'Order Accepted')
        self.assertEqual(message.data, {'orderId': self.order.id, 'status': 'accepted', 'url': '/orders'})

    def test_queue_failure_does_not_fail_status_change(self) -> None:
        broken = MagicMock(side_effect=RuntimeError('queue full'))

        with self.assertLogs('canteen.services.order_admin_service', level='WARNING'):
            change_order_status(
                self.db,
                order_id=self.order.id,
                new_status='accepted',
                actor_user_id=self.admin.id,
                schedule_push=broken,
            )

        self.assertEqual(self.db.get(Order, self.order.id).status, OrderStatus.ACCEPTED)

    def test_queued_push_failure_is_logged(self) -> None:
        self.db.add(PushSubscription(user_id=self.customer.id, endpoint='https://push.example/abc', p256dh='k', auth='a'))
        self.db.commit()
        provider = MagicMock()
        provider.send.side_effect = RuntimeError('gateway down')
        message = PushMessage(user_id=self.customer.id, title='Order Accepted', body='b', data={'orderId': self.order.id})

        with self.assertLogs('canteen.services.push_service', level='WARNING'):
            result = deliver_push(self.session_factory, provider, message)

        self.assertEqual((result.sent, result.total), (0, 1))
        provider.send.assert_called_once()

    def test_compute_adjusted_amount(self) -> None:
        self.assertIsNone(compute_adjusted_amount(list(self.order.items)))
        self.tea.item_status = OrderItemStatus.OUT_OF_STOCK
        self.assertEqual(compute_adjusted_amount(list(self.order.items)), Decimal('150'))


if __name__ == '__main__':
    unittest.main()
