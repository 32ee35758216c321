from __future__ import annotations

import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from canteen.errors import PersistenceError, StoreClosedError, ValidationError
from canteen.models import AuditLog, Base, CartItem, Order, OrderStatus, Product, Profile, User, UserRole
from canteen.services.cart_service import add_to_cart, cart_totals, list_cart, update_quantity
from canteen.services.order_placement_service import ORDER_FAILED_MESSAGE, place_order
from canteen.services.realtime_service import ORDER_ITEMS_TABLE, ORDERS_TABLE, ChangeFeed
from canteen.services.store_status_service import update_store_settings

NOON = datetime(2024, 5, 1, 12, 0)


class OrderPlacementServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()

        self.user = User(email='customer@example.com', password_hash='x', role=UserRole.CUSTOMER, active=True)
        self.db.add(self.user)
        self.db.flush()
        self.db.add(Profile(user_id=self.user.id, phone='9876543210'))
        self.tea = Product(name='Tea', quantity_label='150 ml', price=Decimal('50'), active=True)
        self.thali = Product(name='Thali', quantity_label='1 plate', price=Decimal('150'), active=True)
        self.db.add_all([self.tea, self.thali])
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def _fill_cart(self) -> None:
        add_to_cart(self.db, user_id=self.user.id, product_id=self.tea.id, count=2)
        add_to_cart(self.db, user_id=self.user.id, product_id=self.thali.id, count=1)
        self.db.commit()

    def test_places_order_from_cart(self) -> None:
        self._fill_cart()
        feed = ChangeFeed()
        received = []
        feed.subscribe(ORDERS_TABLE, received.append)
        feed.subscribe(ORDER_ITEMS_TABLE, received.append)

        order = place_order(self.db, user_id=self.user.id, delivery_address=' Hostel B ', now=NOON, feed=feed)

        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.total_amount, Decimal('250'))
        self.assertIsNone(order.adjusted_amount)
        self.assertEqual(order.delivery_address, 'Hostel B')
        self.assertEqual(len(order.items), 2)
        self.assertEqual(sorted((item.product_name, item.quantity) for item in order.items), [('Tea', 2), ('Thali', 1)])
        self.assertEqual(list_cart(self.db, user_id=self.user.id), [])
        self.assertEqual([event.table for event in received], [ORDERS_TABLE, ORDER_ITEMS_TABLE, ORDER_ITEMS_TABLE])

        audit = self.db.execute(select(AuditLog).where(AuditLog.action == 'ORDER_PLACED')).scalar_one()
        self.assertEqual(audit.order_id, order.id)

    def test_item_snapshot_survives_product_price_change(self) -> None:
        self._fill_cart()
        order = place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=NOON)

        self.tea.price = Decimal('80')
        self.db.commit()

        tea_line = next(item for item in order.items if item.product_name == 'Tea')
        self.assertEqual(tea_line.product_price, Decimal('50'))

    def test_closed_store_rejects_and_keeps_cart(self) -> None:
        self._fill_cart()
        update_store_settings(self.db, updated_by_user_id=None, force_status='closed', closed_message='Closed today')
        self.db.commit()

        with self.assertRaises(StoreClosedError) as ctx:
            place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=NOON)

        self.assertEqual(ctx.exception.message, 'Closed today')
        self.assertEqual(self.db.execute(select(Order)).scalars().all(), [])
        self.assertEqual(len(list_cart(self.db, user_id=self.user.id)), 2)

    def test_outside_hours_reports_opening_time(self) -> None:
        self._fill_cart()
        with self.assertRaises(StoreClosedError) as ctx:
            place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=datetime(2024, 5, 1, 23, 0))
        self.assertEqual(ctx.exception.next_open_time, '9:00 AM')
        self.assertTrue(ctx.exception.message.endswith('Opens at 9:00 AM.'))

    def test_requires_address_phone_and_items(self) -> None:
        with self.assertRaisesRegex(ValidationError, 'cart is empty'):
            place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=NOON)

        self._fill_cart()
        with self.assertRaisesRegex(ValidationError, 'delivery address'):
            place_order(self.db, user_id=self.user.id, delivery_address='   ', now=NOON)

        self.db.get(Profile, self.user.id).phone = None
        self.db.commit()
        with self.assertRaisesRegex(ValidationError, 'phone number'):
            place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=NOON)

    def test_storage_failure_rolls_back_everything(self) -> None:
        self._fill_cart()
        with patch(
            'canteen.services.order_placement_service.clear_cart',
            side_effect=OperationalError('DELETE FROM cart_items', {}, Exception('disk I/O error')),
        ):
            with self.assertLogs('canteen.services.order_placement_service', level='ERROR'):
                with self.assertRaises(PersistenceError) as ctx:
                    place_order(self.db, user_id=self.user.id, delivery_address='Hostel B', now=NOON)

        self.assertEqual(str(ctx.exception), ORDER_FAILED_MESSAGE)
        self.assertEqual(self.db.execute(select(Order)).scalars().all(), [])
        self.assertEqual(len(list_cart(self.db, user_id=self.user.id)), 2)


class CartServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://')
        Base.metadata.create_all(engine)
        self.db = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
        self.user = User(email='c@example.com', password_hash='x', role=UserRole.CUSTOMER, active=True)
        self.product = Product(name='Samosa', quantity_label='2 pcs', price=Decimal('30'), active=True)
        self.db.add_all([self.user, self.product])
        self.db.commit()

    def tearDown(self) -> None:
        self.db.close()

    def test_adding_same_product_increments_line(self) -> None:
        add_to_cart(self.db, user_id=self.user.id, product_id=self.product.id)
        add_to_cart(self.db, user_id=self.user.id, product_id=self.product.id, count=2)

        lines = list_cart(self.db, user_id=self.user.id)
        self.assertEqual(len(lines), 1)
        self.assertEqual(cart_totals(lines), (3, Decimal('90')))

    def test_zero_quantity_removes_line(self) -> None:
        add_to_cart(self.db, user_id=self.user.id, product_id=self.product.id)
        self.assertIsNone(update_quantity(self.db, user_id=self.user.id, product_id=self.product.id, count=0))
        self.assertEqual(self.db.execute(select(CartItem)).scalars().all(), [])

    def test_inactive_product_rejected(self) -> None:
        self.product.active = False
        self.db.commit()
        with self.assertRaises(ValueError):
            add_to_cart(self.db, user_id=self.user.id, product_id=self.product.id)


if __name__ == '__main__':
    unittest.main()
