from __future__ import annotations

from canteen.errors import InvalidTransitionError
from canteen.models import NotificationType, OrderStatus

ORDER_STATUS_FLOW: dict[OrderStatus, tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.ACCEPTED, OrderStatus.CANCELLED),
    OrderStatus.ACCEPTED: (OrderStatus.PACKED, OrderStatus.CANCELLED),
    OrderStatus.PACKED: (OrderStatus.OUT_FOR_DELIVERY, OrderStatus.CANCELLED),
    OrderStatus.OUT_FOR_DELIVERY: (OrderStatus.DELIVERED,),
    OrderStatus.DELIVERED: (),
    OrderStatus.CANCELLED: (),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
INITIAL_STATUS = OrderStatus.PENDING

STATUS_LABELS: dict[OrderStatus, str] = {
    OrderStatus.PENDING: 'Pending',
    OrderStatus.ACCEPTED: 'Accepted',
    OrderStatus.PACKED: 'Packed',
    OrderStatus.OUT_FOR_DELIVERY: 'Out for Delivery',
    OrderStatus.DELIVERED: 'Delivered',
    OrderStatus.CANCELLED: 'Cancelled',
}


def coerce_status(value: OrderStatus | str) -> OrderStatus | None:
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus((value or '').strip().lower())
    except ValueError:
        return None


def valid_next_statuses(current: OrderStatus | str) -> list[OrderStatus]:
    status = coerce_status(current)
    if status is None:
        return []
    return list(ORDER_STATUS_FLOW[status])


def is_valid_transition(current: OrderStatus | str, requested: OrderStatus | str) -> bool:
    target = coerce_status(requested)
    if target is None:
        return False
    return target in valid_next_statuses(current)


def is_terminal(status: OrderStatus | str) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def assert_transition(current: OrderStatus | str, requested: OrderStatus | str) -> OrderStatus:
    if not is_valid_transition(current, requested):
        raise InvalidTransitionError(status_label(current), status_label(requested))
    return coerce_status(requested)


def status_label(status: OrderStatus | str) -> str:
    resolved = coerce_status(status)
    if resolved is None:
        return str(status)
    return STATUS_LABELS[resolved]


def notification_type_for(status: OrderStatus) -> NotificationType | None:
    if status == OrderStatus.PENDING:
        return None
    return NotificationType(f'order_{status.value}')
