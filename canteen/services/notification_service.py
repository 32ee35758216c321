from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from canteen.config import settings
from canteen.models import Notification, NotificationType

NOTIFICATION_GLYPHS: dict[NotificationType, str] = {
    NotificationType.ORDER_ACCEPTED: '✅',
    NotificationType.ORDER_PACKED: '📦',
    NotificationType.ORDER_OUT_FOR_DELIVERY: '🚚',
    NotificationType.ORDER_DELIVERED: '🎉',
    NotificationType.ORDER_CANCELLED: '❌',
    NotificationType.ITEM_OUT_OF_STOCK: '⚠️',
}
DEFAULT_GLYPH = '📋'


def notification_glyph(notification_type: NotificationType | str) -> str:
    try:
        return NOTIFICATION_GLYPHS[NotificationType(notification_type)]
    except ValueError:
        return DEFAULT_GLYPH


def order_reference(order_id: int) -> str:
    return f'#{order_id:06d}'


def format_currency(amount: Decimal | int | float) -> str:
    return f'{settings.currency_symbol}{Decimal(amount):,.0f}'


def notification_to_dict(notification: Notification) -> dict:
    return {
        'id': notification.id,
        'user_id': notification.user_id,
        'order_id': notification.order_id,
        'type': notification.type.value,
        'title': notification.title,
        'message': notification.message,
        'is_read': notification.is_read,
        'created_at': notification.created_at,
    }


def create_notification(
    db: Session,
    *,
    user_id: int,
    order_id: int | None,
    notification_type: NotificationType,
    title: str,
    message: str,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        order_id=order_id,
        type=notification_type,
        title=title,
        message=message,
        is_read=False,
    )
    db.add(notification)
    db.flush()
    return notification


def list_notifications(db: Session, *, user_id: int, limit: int = 20) -> list[Notification]:
    return db.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    ).scalars().all()


def unread_count(db: Session, *, user_id: int) -> int:
    return db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id,
            Notification.is_read.is_(False),
        )
    ).scalar_one()


def mark_as_read(db: Session, *, user_id: int, notification_id: int) -> Notification:
    notification = db.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    ).scalar_one_or_none()
    if not notification:
        raise ValueError('Notification not found')
    notification.is_read = True
    db.flush()
    return notification


def list_unread_ids(db: Session, *, user_id: int) -> list[int]:
    return db.execute(
        select(Notification.id).where(Notification.user_id == user_id, Notification.is_read.is_(False))
    ).scalars().all()


def mark_all_as_read(db: Session, *, user_id: int) -> list[int]:
    ids = list_unread_ids(db, user_id=user_id)
    if ids:
        db.execute(
            update(Notification)
            .where(Notification.id.in_(ids))
            .values(is_read=True)
            .execution_options(synchronize_session='fetch')
        )
    return ids
