from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from canteen.models import UserPreference

DISMISSED_NOTICES = 'dismissed_notices'
SEARCH_HISTORY = 'search_history'
ORDER_ALERTS_MUTED = 'orderAlertsMuted'
CUSTOMER_NOTIFICATIONS_MUTED = 'customerNotificationsMuted'

KNOWN_KEYS = frozenset({DISMISSED_NOTICES, SEARCH_HISTORY, ORDER_ALERTS_MUTED, CUSTOMER_NOTIFICATIONS_MUTED})


def _check_key(key: str) -> str:
    if key not in KNOWN_KEYS:
        raise ValueError(f'Unknown preference {key!r}')
    return key


def get_preference(db: Session, *, user_id: int, key: str) -> str | None:
    _check_key(key)
    return db.execute(
        select(UserPreference.value).where(UserPreference.user_id == user_id, UserPreference.key == key)
    ).scalar_one_or_none()


def set_preference(db: Session, *, user_id: int, key: str, value: str) -> UserPreference:
    _check_key(key)
    row = db.execute(
        select(UserPreference).where(UserPreference.user_id == user_id, UserPreference.key == key)
    ).scalar_one_or_none()
    if row is None:
        row = UserPreference(user_id=user_id, key=key, value=value)
        db.add(row)
    else:
        row.value = value
        row.updated_at = datetime.now(tz=timezone.utc)
    db.flush()
    return row


def get_flag(db: Session, *, user_id: int, key: str) -> bool:
    return get_preference(db, user_id=user_id, key=key) == 'true'


def set_flag(db: Session, *, user_id: int, key: str, enabled: bool) -> None:
    set_preference(db, user_id=user_id, key=key, value='true' if enabled else 'false')
