from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from canteen.config import settings
from canteen.errors import NotificationDeliveryFailure
from canteen.models import PushSubscription

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushResult:
    sent: int
    total: int


@dataclass(frozen=True)
class PushMessage:
    user_id: int
    title: str
    body: str
    data: dict = field(default_factory=dict)


PushScheduler = Callable[[PushMessage], None]


class PushProvider(Protocol):
    def send(self, subscription: PushSubscription, payload: dict) -> None: ...


class LogPushProvider:
    """Records what would be delivered; used when no gateway is configured."""

    def send(self, subscription: PushSubscription, payload: dict) -> None:
        logger.info('Would send push to endpoint %s...: %s', subscription.endpoint[:50], payload.get('title'))


class HttpPushProvider:
    def __init__(self) -> None:
        if not settings.push_gateway_url:
            raise ValueError('PUSH_GATEWAY_URL is required when PUSH_PROVIDER=http')
        self.url = settings.push_gateway_url
        self.headers = {'Content-Type': 'application/json'}
        if settings.push_gateway_token:
            self.headers['Authorization'] = f'Bearer {settings.push_gateway_token}'

    def send(self, subscription: PushSubscription, payload: dict) -> None:
        body = {
            'subscription': {
                'endpoint': subscription.endpoint,
                'keys': {'p256dh': subscription.p256dh, 'auth': subscription.auth},
            },
            'payload': payload,
        }
        req = Request(
            url=self.url,
            data=json.dumps(body).encode('utf-8'),
            headers=self.headers,
            method='POST',
        )
        try:
            with urlopen(req, timeout=settings.push_timeout_seconds) as response:
                response.read()
        except HTTPError as exc:
            detail = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise NotificationDeliveryFailure(f'Push gateway error {exc.code}: {detail}') from exc
        except URLError as exc:
            raise NotificationDeliveryFailure(f'Push gateway network error: {exc.reason}') from exc


def save_subscription(db: Session, *, user_id: int, endpoint: str, p256dh: str, auth: str) -> PushSubscription:
    endpoint = endpoint.strip()
    if not endpoint or not p256dh.strip() or not auth.strip():
        raise ValueError('Push subscription endpoint and keys are required')

    row = db.execute(select(PushSubscription).where(PushSubscription.endpoint == endpoint)).scalar_one_or_none()
    if row is None:
        row = PushSubscription(user_id=user_id, endpoint=endpoint, p256dh=p256dh.strip(), auth=auth.strip())
        db.add(row)
    else:
        row.user_id = user_id
        row.p256dh = p256dh.strip()
        row.auth = auth.strip()
        row.updated_at = datetime.now(tz=timezone.utc)
    db.flush()
    return row


def delete_subscription(db: Session, *, user_id: int, endpoint: str) -> int:
    result = db.execute(
        delete(PushSubscription).where(
            PushSubscription.user_id == user_id,
            PushSubscription.endpoint == endpoint.strip(),
        )
    )
    return result.rowcount or 0


def send_push(
    db: Session,
    provider: PushProvider,
    *,
    user_id: int,
    title: str,
    body: str,
    data: dict | None = None,
) -> PushResult:
    try:
        subscriptions = db.execute(select(PushSubscription).where(PushSubscription.user_id == user_id)).scalars().all()
    except Exception:
        logger.warning('Could not load push subscriptions for user %s', user_id, exc_info=True)
        return PushResult(sent=0, total=0)

    if not subscriptions:
        return PushResult(sent=0, total=0)

    payload = {
        'title': title,
        'body': body,
        'icon': '/favicon.ico',
        'badge': '/favicon.ico',
        'tag': f'notification-{int(datetime.now(tz=timezone.utc).timestamp() * 1000)}',
        'data': data or {},
    }
    sent = 0
    for subscription in subscriptions:
        try:
            provider.send(subscription, payload)
            sent += 1
        except Exception as exc:
            logger.warning('Push to subscription %s not delivered: %s', subscription.id, exc)
    logger.info('Processed %s/%s push notifications for user %s', sent, len(subscriptions), user_id)
    return PushResult(sent=sent, total=len(subscriptions))


def deliver_push(session_factory: Callable[[], Session], provider: PushProvider, message: PushMessage) -> PushResult:
    """Send a queued message with a session of its own, outside the request that queued it."""
    with session_factory() as db:
        return send_push(
            db,
            provider,
            user_id=message.user_id,
            title=message.title,
            body=message.body,
            data=message.data,
        )
