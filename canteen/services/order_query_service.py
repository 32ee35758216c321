from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from canteen.models import Order, OrderItem, OrderStatus, Product, User, UserRole
from canteen.services.order_status_service import is_terminal, status_label, valid_next_statuses
from canteen.services.realtime_service import ORDER_ITEMS_TABLE, ORDERS_TABLE, ChangeEvent, ChangeType


def order_item_to_dict(item: OrderItem) -> dict:
    return {
        'id': item.id,
        'order_id': item.order_id,
        'product_id': item.product_id,
        'product_name': item.product_name,
        'product_price': item.product_price,
        'quantity': item.quantity,
        'item_status': item.item_status.value,
    }


def order_to_dict(order: Order, *, include_items: bool = True) -> dict:
    payload = {
        'id': order.id,
        'user_id': order.user_id,
        'total_amount': order.total_amount,
        'adjusted_amount': order.adjusted_amount,
        'status': order.status.value,
        'status_label': status_label(order.status),
        'is_terminal': is_terminal(order.status),
        'valid_next_statuses': [status.value for status in valid_next_statuses(order.status)],
        'delivery_address': order.delivery_address,
        'created_at': order.created_at,
    }
    if include_items:
        payload['items'] = [order_item_to_dict(item) for item in order.items]
    return payload


def order_change_events(order: Order, event_type: ChangeType, *, items: list[OrderItem] | None = None) -> list[ChangeEvent]:
    events = [ChangeEvent(table=ORDERS_TABLE, event_type=event_type, row=order_to_dict(order, include_items=False))]
    for item in items or []:
        events.append(ChangeEvent(table=ORDER_ITEMS_TABLE, event_type=event_type, row=order_item_to_dict(item)))
    return events


def get_order(db: Session, *, order_id: int) -> Order:
    order = db.execute(select(Order).where(Order.id == order_id)).scalar_one_or_none()
    if not order:
        raise ValueError('Order not found')
    return order


def get_order_for_update(db: Session, *, order_id: int) -> Order:
    order = db.execute(select(Order).where(Order.id == order_id).with_for_update()).scalar_one_or_none()
    if not order:
        raise ValueError('Order not found')
    return order


def list_orders(
    db: Session,
    *,
    status: OrderStatus | None = None,
    user_id: int | None = None,
    limit: int = 200,
) -> list[Order]:
    query = select(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(limit)
    if status is not None:
        query = query.where(Order.status == status)
    if user_id is not None:
        query = query.where(Order.user_id == user_id)
    return db.execute(query).scalars().all()


def dashboard_summary(db: Session) -> dict:
    orders = db.execute(
        select(Order.status, Order.total_amount, Order.adjusted_amount)
    ).all()
    revenue = sum(
        (
            row.adjusted_amount if row.adjusted_amount is not None else row.total_amount
            for row in orders
            if row.status != OrderStatus.CANCELLED
        ),
        Decimal('0'),
    )
    product_count = db.execute(select(func.count(Product.id)).where(Product.active.is_(True))).scalar_one()
    customer_count = db.execute(select(func.count(User.id)).where(User.role == UserRole.CUSTOMER)).scalar_one()
    return {
        'total_orders': len(orders),
        'total_revenue': revenue,
        'pending_orders': sum(1 for row in orders if row.status == OrderStatus.PENDING),
        'total_products': product_count,
        'total_users': customer_count,
    }
