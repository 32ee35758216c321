from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from canteen.config import settings
from canteen.models import NotificationType
from canteen.services.notification_service import format_currency, notification_glyph, order_reference
from canteen.services.preference_service import CUSTOMER_NOTIFICATIONS_MUTED, ORDER_ALERTS_MUTED
from canteen.services.realtime_service import NOTIFICATIONS_TABLE, ORDERS_TABLE, ChangeEvent, ChangeType

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    STANDARD = 'standard'
    HIGH = 'high'
    URGENT = 'urgent'


class ObserverKind(str, Enum):
    ADMIN = 'admin'
    CUSTOMER = 'customer'

    @property
    def mute_preference_key(self) -> str:
        return ORDER_ALERTS_MUTED if self == ObserverKind.ADMIN else CUSTOMER_NOTIFICATIONS_MUTED


@dataclass(frozen=True)
class Tone:
    frequency: float
    start: float
    duration: float
    waveform: str = 'sine'


PRIORITY_SOUNDS: dict[Priority, tuple[Tone, ...]] = {
    Priority.STANDARD: (Tone(880.0, 0.0, 0.3),),
    Priority.HIGH: (Tone(1046.5, 0.0, 0.15), Tone(1046.5, 0.2, 0.15)),
    Priority.URGENT: (
        Tone(880.0, 0.0, 0.12, 'square'),
        Tone(1046.5, 0.15, 0.12, 'square'),
        Tone(1318.5, 0.30, 0.12, 'square'),
    ),
}

PRIORITY_LABELS: dict[Priority, str] = {
    Priority.URGENT: '🔴 URGENT',
    Priority.HIGH: '🟠 High Priority',
    Priority.STANDARD: '🟢 New',
}

_DELIVERED_CHIME = (Tone(523.0, 0.0, 0.2), Tone(659.0, 0.1, 0.2), Tone(784.0, 0.2, 0.2))
_WARNING_TONE = (Tone(440.0, 0.0, 0.3, 'triangle'),)
_STANDARD_CHIME = (Tone(880.0, 0.0, 0.12), Tone(1046.5, 0.15, 0.12))


def customer_sound_for(notification_type: NotificationType | str) -> tuple[Tone, ...]:
    if notification_type == NotificationType.ORDER_DELIVERED:
        return _DELIVERED_CHIME
    if notification_type in (NotificationType.ITEM_OUT_OF_STOCK, NotificationType.ORDER_CANCELLED):
        return _WARNING_TONE
    return _STANDARD_CHIME


def classify_priority(
    amount: Decimal | int | float,
    *,
    urgent_threshold: Decimal | None = None,
    high_threshold: Decimal | None = None,
) -> Priority:
    value = Decimal(str(amount))
    urgent = settings.alert_urgent_threshold if urgent_threshold is None else urgent_threshold
    high = settings.alert_high_threshold if high_threshold is None else high_threshold
    if value >= urgent:
        return Priority.URGENT
    if value >= high:
        return Priority.HIGH
    return Priority.STANDARD


@dataclass(frozen=True)
class ObserverState:
    """What one observer knows: ids seen so far and which are still unread.

    The unread count is derived from ids, so applying an event twice never
    counts it twice. Muting has no effect on counting.
    """

    known_ids: frozenset = frozenset()
    unread_ids: frozenset = frozenset()
    muted: bool = False
    native_permission: bool = False

    @property
    def unread_count(self) -> int:
        return len(self.unread_ids)

    @classmethod
    def from_notifications(
        cls, rows: Iterable[Mapping[str, Any]], *, unread_ids: Iterable = (), muted: bool = False
    ) -> ObserverState:
        """Seed from already-stored rows plus unread ids older than those rows; none of them alert."""
        rows = list(rows)
        unread = frozenset(unread_ids) | {row['id'] for row in rows if not row.get('is_read')}
        return cls(known_ids=frozenset(row['id'] for row in rows) | unread, unread_ids=unread, muted=muted)


def apply_admin_event(state: ObserverState, event: ChangeEvent) -> ObserverState:
    if event.table != ORDERS_TABLE or event.event_type != ChangeType.INSERT:
        return state
    if event.row_id in state.known_ids:
        return state
    return replace(
        state,
        known_ids=state.known_ids | {event.row_id},
        unread_ids=state.unread_ids | {event.row_id},
    )


def apply_customer_event(state: ObserverState, event: ChangeEvent) -> ObserverState:
    if event.table != NOTIFICATIONS_TABLE:
        return state
    row_id = event.row_id
    if event.event_type == ChangeType.DELETE:
        return replace(state, known_ids=state.known_ids - {row_id}, unread_ids=state.unread_ids - {row_id})
    unread_ids = state.unread_ids - {row_id} if event.row.get('is_read') else state.unread_ids | {row_id}
    return replace(state, known_ids=state.known_ids | {row_id}, unread_ids=unread_ids)


def mark_all_seen(state: ObserverState) -> ObserverState:
    return replace(state, unread_ids=frozenset())


@dataclass(frozen=True)
class Alert:
    title: str
    body: str
    tag: str
    sound: tuple[Tone, ...]
    require_interaction: bool = False
    banner_variant: str = 'default'
    priority: Priority | None = None
    duration_ms: int | None = None


def build_admin_alert(row: Mapping[str, Any]) -> Alert:
    amount = row.get('total_amount') or 0
    priority = classify_priority(amount)
    title = f'{PRIORITY_LABELS[priority]} Order!'
    return Alert(
        title=title,
        body=f'Order {order_reference(row["id"])} - {format_currency(amount)}',
        tag=f'order-{row["id"]}',
        sound=PRIORITY_SOUNDS[priority],
        require_interaction=priority == Priority.URGENT,
        banner_variant='destructive' if priority == Priority.URGENT else 'default',
        priority=priority,
    )


def build_customer_alert(row: Mapping[str, Any]) -> Alert:
    notification_type = row.get('type')
    return Alert(
        title=f'{notification_glyph(notification_type)} {row.get("title", "")}',
        body=row.get('message', ''),
        tag=f'notification-{row["id"]}',
        sound=customer_sound_for(notification_type),
        duration_ms=8000,
    )


class AlertSink(Protocol):
    def play_sound(self, tones: tuple[Tone, ...]) -> None: ...

    def show_native(self, *, title: str, body: str, tag: str, require_interaction: bool) -> None: ...

    def show_banner(self, *, title: str, body: str, variant: str, duration_ms: int | None) -> None: ...


class FrameAlertSink:
    """Turns side effects into JSON-ready frames for a connected client."""

    def __init__(self, emit: Callable[[dict], None]) -> None:
        self.emit = emit

    def play_sound(self, tones: tuple[Tone, ...]) -> None:
        self.emit(
            {
                'kind': 'sound',
                'tones': [
                    {'frequency': tone.frequency, 'start': tone.start, 'duration': tone.duration, 'waveform': tone.waveform}
                    for tone in tones
                ],
            }
        )

    def show_native(self, *, title: str, body: str, tag: str, require_interaction: bool) -> None:
        self.emit(
            {'kind': 'native', 'title': title, 'body': body, 'tag': tag, 'require_interaction': require_interaction}
        )

    def show_banner(self, *, title: str, body: str, variant: str, duration_ms: int | None) -> None:
        self.emit({'kind': 'banner', 'title': title, 'body': body, 'variant': variant, 'duration_ms': duration_ms})


_REDUCERS = {
    ObserverKind.ADMIN: apply_admin_event,
    ObserverKind.CUSTOMER: apply_customer_event,
}
_ALERT_BUILDERS = {
    ObserverKind.ADMIN: build_admin_alert,
    ObserverKind.CUSTOMER: build_customer_alert,
}


@dataclass
class AlertDispatcher:
    """Per-observer reaction to order and notification events.

    Sound, native notification, and banner are attempted independently; any
    of them may fail without affecting the others or the observer state.
    """

    kind: ObserverKind
    sink: AlertSink
    state: ObserverState = field(default_factory=ObserverState)
    on_mute_change: Callable[[bool], None] | None = None

    def handle(self, event: ChangeEvent) -> list[str]:
        previous = self.state
        self.state = _REDUCERS[self.kind](previous, event)

        is_new = event.event_type == ChangeType.INSERT and event.row_id not in previous.known_ids
        if not is_new or self.state is previous:
            return []

        alert = _ALERT_BUILDERS[self.kind](event.row)
        logger.info('%s alert %s (priority=%s)', self.kind.value, alert.tag, alert.priority.value if alert.priority else '-')
        fired: list[str] = []
        if not self.state.muted and self._attempt('sound', lambda: self.sink.play_sound(alert.sound)):
            fired.append('sound')
        if self.state.native_permission and self._attempt(
            'native',
            lambda: self.sink.show_native(
                title=alert.title, body=alert.body, tag=alert.tag, require_interaction=alert.require_interaction
            ),
        ):
            fired.append('native')
        if self._attempt(
            'banner',
            lambda: self.sink.show_banner(
                title=alert.title, body=alert.body, variant=alert.banner_variant, duration_ms=alert.duration_ms
            ),
        ):
            fired.append('banner')
        return fired

    def _attempt(self, channel: str, effect: Callable[[], None]) -> bool:
        try:
            effect()
        except Exception as exc:
            logger.warning('Could not deliver %s %s alert: %s', self.kind.value, channel, exc)
            return False
        return True

    @property
    def unread_count(self) -> int:
        return self.state.unread_count

    def mark_seen(self) -> None:
        self.state = mark_all_seen(self.state)

    def set_muted(self, muted: bool) -> None:
        self.state = replace(self.state, muted=muted)
        if self.on_mute_change is None:
            return
        try:
            self.on_mute_change(muted)
        except Exception as exc:
            logger.warning('Could not persist %s mute preference: %s', self.kind.value, exc)

    def toggle_mute(self) -> bool:
        self.set_muted(not self.state.muted)
        return self.state.muted

    def request_permission(self, requester: Callable[[], str]) -> bool:
        if self.state.native_permission:
            return True
        try:
            granted = requester() == 'granted'
        except Exception as exc:
            logger.warning('Native notification permission request failed: %s', exc)
            granted = False
        self.state = replace(self.state, native_permission=granted)
        return granted
