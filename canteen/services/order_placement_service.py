from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from canteen.errors import PersistenceError, StoreClosedError, ValidationError
from canteen.models import CartItem, Order, OrderItem, OrderItemStatus
from canteen.services.audit_service import log_audit
from canteen.services.cart_service import clear_cart, list_cart
from canteen.services.order_query_service import order_change_events
from canteen.services.order_status_service import INITIAL_STATUS
from canteen.services.profile_service import get_profile
from canteen.services.realtime_service import ChangeFeed, ChangeType
from canteen.services.store_status_service import current_store_status

logger = logging.getLogger(__name__)

ORDER_FAILED_MESSAGE = 'Failed to place order. Please try again.'


def compute_order_total(lines: list[CartItem]) -> Decimal:
    return sum((Decimal(line.product_price) * line.count for line in lines), Decimal('0'))


def _check_preconditions(db: Session, *, user_id: int, delivery_address: str | None) -> tuple[str, list[CartItem]]:
    address = (delivery_address or '').strip()
    if not address:
        raise ValidationError('Please enter a delivery address')

    profile = get_profile(db, user_id=user_id)
    if not profile or not (profile.phone or '').strip():
        raise ValidationError('Please add a phone number to your profile before ordering')

    lines = list_cart(db, user_id=user_id)
    if not lines:
        raise ValidationError('Your cart is empty')
    return address, lines


def place_order(
    db: Session,
    *,
    user_id: int,
    delivery_address: str | None,
    now: datetime | None = None,
    feed: ChangeFeed | None = None,
    ip: str | None = None,
) -> Order:
    """Turn the user's cart into a pending order.

    Availability is evaluated here, against freshly loaded settings, never a
    cached client view. The order, its item snapshots, and the cart deletion
    share one transaction: either all of them commit or none do.
    """
    address, lines = _check_preconditions(db, user_id=user_id, delivery_address=delivery_address)

    store_status = current_store_status(db, now=now)
    if not store_status.is_open:
        raise StoreClosedError(store_status.message, next_open_time=store_status.next_open_time)

    total = compute_order_total(lines)

    try:
        order = Order(
            user_id=user_id,
            total_amount=total,
            adjusted_amount=None,
            status=INITIAL_STATUS,
            delivery_address=address,
        )
        for line in lines:
            order.items.append(
                OrderItem(
                    product_id=line.product_id,
                    product_name=line.product_name,
                    product_price=line.product_price,
                    quantity=line.count,
                    item_status=OrderItemStatus.ACTIVE,
                )
            )
        db.add(order)
        db.flush()

        clear_cart(db, user_id=user_id)
        log_audit(
            db,
            actor_user_id=user_id,
            action='ORDER_PLACED',
            order_id=order.id,
            ip=ip,
            metadata={'total_amount': str(total), 'line_count': len(lines)},
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Order placement failed for user %s', user_id)
        raise PersistenceError(ORDER_FAILED_MESSAGE) from exc

    logger.info('Order %s placed by user %s for %s', order.id, user_id, total)
    if feed is not None:
        feed.publish_many(order_change_events(order, ChangeType.INSERT, items=list(order.items)))
    return order
