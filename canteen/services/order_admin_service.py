from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from canteen.errors import PersistenceError, ValidationError
from canteen.models import Notification, NotificationType, Order, OrderItem, OrderItemStatus, OrderStatus
from canteen.services.audit_service import log_audit
from canteen.services.notification_service import (
    create_notification,
    format_currency,
    notification_to_dict,
    order_reference,
)
from canteen.services.order_query_service import get_order_for_update, order_change_events
from canteen.services.order_status_service import assert_transition, notification_type_for, status_label
from canteen.services.push_service import PushMessage, PushScheduler
from canteen.services.realtime_service import NOTIFICATIONS_TABLE, ChangeEvent, ChangeFeed, ChangeType

logger = logging.getLogger(__name__)

# Post-acceptance, non-terminal; pending orders lose items through review.
ITEM_EDITABLE_STATUSES = frozenset({OrderStatus.ACCEPTED, OrderStatus.PACKED, OrderStatus.OUT_FOR_DELIVERY})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def compute_adjusted_amount(items: list[OrderItem]) -> Decimal | None:
    if not any(item.item_status == OrderItemStatus.OUT_OF_STOCK for item in items):
        return None
    return sum(
        (item.product_price * item.quantity for item in items if item.item_status == OrderItemStatus.ACTIVE),
        Decimal('0'),
    )


def _commit_and_announce(
    db: Session,
    *,
    order: Order,
    notification: Notification,
    changed_items: list[OrderItem],
    feed: ChangeFeed | None,
    schedule_push: PushScheduler | None,
) -> Order:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Could not persist change to order %s', order.id)
        raise PersistenceError('Failed to update order. Please try again.') from exc

    if feed is not None:
        feed.publish_many(order_change_events(order, ChangeType.UPDATE, items=changed_items))
        feed.publish(
            ChangeEvent(table=NOTIFICATIONS_TABLE, event_type=ChangeType.INSERT, row=notification_to_dict(notification))
        )
    if schedule_push is not None:
        message = PushMessage(
            user_id=order.user_id,
            title=notification.title,
            body=notification.message,
            data={'orderId': order.id, 'status': order.status.value, 'url': '/orders'},
        )
        try:
            schedule_push(message)
        except Exception as exc:
            logger.warning('Could not queue push for order %s: %s', order.id, exc)
    return order


def change_order_status(
    db: Session,
    *,
    order_id: int,
    new_status: OrderStatus | str,
    actor_user_id: int,
    ip: str | None = None,
    feed: ChangeFeed | None = None,
    schedule_push: PushScheduler | None = None,
) -> Order:
    order = get_order_for_update(db, order_id=order_id)
    previous = order.status
    target = assert_transition(previous, new_status)

    order.status = target
    order.updated_at = _now()
    label = status_label(target)
    notification = create_notification(
        db,
        user_id=order.user_id,
        order_id=order.id,
        notification_type=notification_type_for(target),
        title=f'Order {label}',
        message=f'Your order {order_reference(order.id)} is now {label.lower()}.',
    )
    log_audit(
        db,
        actor_user_id=actor_user_id,
        action='ORDER_STATUS_CHANGED',
        order_id=order.id,
        ip=ip,
        metadata={'from': previous.value, 'to': target.value},
    )
    return _commit_and_announce(
        db, order=order, notification=notification, changed_items=[], feed=feed, schedule_push=schedule_push
    )


def cancel_order(
    db: Session,
    *,
    order_id: int,
    actor_user_id: int,
    ip: str | None = None,
    feed: ChangeFeed | None = None,
    schedule_push: PushScheduler | None = None,
) -> Order:
    order = get_order_for_update(db, order_id=order_id)
    previous = order.status
    assert_transition(previous, OrderStatus.CANCELLED)

    order.status = OrderStatus.CANCELLED
    order.updated_at = _now()
    notification = create_notification(
        db,
        user_id=order.user_id,
        order_id=order.id,
        notification_type=NotificationType.ORDER_CANCELLED,
        title='Order Cancelled',
        message=f'Your order {order_reference(order.id)} has been cancelled.',
    )
    log_audit(
        db,
        actor_user_id=actor_user_id,
        action='ORDER_CANCELLED',
        order_id=order.id,
        ip=ip,
        metadata={'from': previous.value},
    )
    return _commit_and_announce(
        db, order=order, notification=notification, changed_items=[], feed=feed, schedule_push=schedule_push
    )


def _resolve_items(order: Order, item_ids: set[int]) -> list[OrderItem]:
    items_by_id = {item.id: item for item in order.items}
    unknown = item_ids - set(items_by_id)
    if unknown:
        raise ValidationError(f'Items {sorted(unknown)} do not belong to this order')
    return [items_by_id[item_id] for item_id in sorted(item_ids)]


def review_order(
    db: Session,
    *,
    order_id: int,
    out_of_stock_item_ids: set[int] | None,
    actor_user_id: int,
    ip: str | None = None,
    feed: ChangeFeed | None = None,
    schedule_push: PushScheduler | None = None,
) -> Order:
    """Accept a pending order, optionally removing unavailable items first."""
    order = get_order_for_update(db, order_id=order_id)
    assert_transition(order.status, OrderStatus.ACCEPTED)

    removed = _resolve_items(order, set(out_of_stock_item_ids or ()))
    if len(removed) == len(order.items):
        raise ValidationError('At least one item must be available to accept the order.')

    for item in removed:
        item.item_status = OrderItemStatus.OUT_OF_STOCK
    order.status = OrderStatus.ACCEPTED
    order.adjusted_amount = compute_adjusted_amount(order.items)
    order.updated_at = _now()

    reference = order_reference(order.id)
    if removed:
        names = ', '.join(item.product_name for item in removed)
        notification = create_notification(
            db,
            user_id=order.user_id,
            order_id=order.id,
            notification_type=NotificationType.ITEM_OUT_OF_STOCK,
            title='Order Accepted - Some Items Unavailable',
            message=(
                f'Your order {reference} has been accepted. Unfortunately, the following items were out of stock '
                f'and have been removed: {names}. Your adjusted total is {format_currency(order.adjusted_amount)}. '
                'We are now processing the remaining items.'
            ),
        )
    else:
        notification = create_notification(
            db,
            user_id=order.user_id,
            order_id=order.id,
            notification_type=NotificationType.ORDER_ACCEPTED,
            title='Order Accepted',
            message=f'Your order {reference} has been accepted and is being prepared.',
        )

    log_audit(
        db,
        actor_user_id=actor_user_id,
        action='ORDER_REVIEWED',
        order_id=order.id,
        ip=ip,
        metadata={
            'out_of_stock_item_ids': [item.id for item in removed],
            'adjusted_amount': str(order.adjusted_amount) if order.adjusted_amount is not None else None,
        },
    )
    return _commit_and_announce(
        db, order=order, notification=notification, changed_items=removed, feed=feed, schedule_push=schedule_push
    )


def mark_items_out_of_stock(
    db: Session,
    *,
    order_id: int,
    item_ids: set[int],
    actor_user_id: int,
    ip: str | None = None,
    feed: ChangeFeed | None = None,
    schedule_push: PushScheduler | None = None,
) -> Order:
    """Remove items from an accepted order that has not yet been delivered or cancelled."""
    order = get_order_for_update(db, order_id=order_id)
    if order.status not in ITEM_EDITABLE_STATUSES:
        raise ValidationError(f'Items cannot be changed while the order is {status_label(order.status).lower()}')
    if not item_ids:
        raise ValidationError('Select at least one item')

    removed = [
        item for item in _resolve_items(order, set(item_ids)) if item.item_status == OrderItemStatus.ACTIVE
    ]
    if not removed:
        raise ValidationError('Selected items are already marked out of stock')
    remaining = [item for item in order.items if item.item_status == OrderItemStatus.ACTIVE and item not in removed]
    if not remaining:
        raise ValidationError('At least one item must remain; cancel the order instead.')

    for item in removed:
        item.item_status = OrderItemStatus.OUT_OF_STOCK
    order.adjusted_amount = compute_adjusted_amount(order.items)
    order.updated_at = _now()

    names = ', '.join(item.product_name for item in removed)
    notification = create_notification(
        db,
        user_id=order.user_id,
        order_id=order.id,
        notification_type=NotificationType.ITEM_OUT_OF_STOCK,
        title='Some Items Unavailable',
        message=(
            f'The following items in your order {order_reference(order.id)} are out of stock and have been '
            f'removed: {names}. Your adjusted total is {format_currency(order.adjusted_amount)}.'
        ),
    )
    log_audit(
        db,
        actor_user_id=actor_user_id,
        action='ORDER_ITEMS_OUT_OF_STOCK',
        order_id=order.id,
        ip=ip,
        metadata={'item_ids': [item.id for item in removed], 'adjusted_amount': str(order.adjusted_amount)},
    )
    return _commit_and_announce(
        db, order=order, notification=notification, changed_items=removed, feed=feed, schedule_push=schedule_push
    )
