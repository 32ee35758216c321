from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, time, timezone
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from canteen.config import settings
from canteen.models import ForceStatus, StoreSetting

logger = logging.getLogger(__name__)

OPEN_TIME_KEY = 'store_open_time'
CLOSE_TIME_KEY = 'store_close_time'
FORCE_STATUS_KEY = 'store_force_status'
CLOSED_MESSAGE_KEY = 'store_closed_message'

_HHMM_RE = re.compile(r'^([01]?\d|2[0-3]):([0-5]\d)$')


@dataclass(frozen=True)
class StoreSettings:
    open_time: str = '09:00'
    close_time: str = '21:00'
    force_status: ForceStatus = ForceStatus.AUTO
    closed_message: str = 'Store is closed right now.'


@dataclass(frozen=True)
class StoreStatus:
    is_open: bool
    message: str
    next_open_time: str | None


def parse_hhmm(value: str) -> tuple[int, int]:
    match = _HHMM_RE.match((value or '').strip())
    if not match:
        raise ValueError(f'Invalid time {value!r}, expected HH:MM')
    return int(match.group(1)), int(match.group(2))


def format_time_12h(value: str) -> str:
    hour, minute = parse_hhmm(value)
    period = 'PM' if hour >= 12 else 'AM'
    display_hour = hour % 12 or 12
    return f'{display_hour}:{minute:02d} {period}'


def _minutes(value: str) -> int:
    hour, minute = parse_hhmm(value)
    return hour * 60 + minute


def evaluate_store_status(now: datetime | time, store_settings: StoreSettings) -> StoreStatus:
    if store_settings.force_status == ForceStatus.CLOSED:
        return StoreStatus(is_open=False, message=store_settings.closed_message, next_open_time=None)
    if store_settings.force_status == ForceStatus.OPEN:
        return StoreStatus(is_open=True, message='', next_open_time=None)

    open_minutes = _minutes(store_settings.open_time)
    close_minutes = _minutes(store_settings.close_time)
    current_minutes = now.hour * 60 + now.minute

    if close_minutes < open_minutes:
        # Overnight window, e.g. 22:00 - 06:00.
        is_open = current_minutes >= open_minutes or current_minutes < close_minutes
    else:
        is_open = open_minutes <= current_minutes < close_minutes

    if is_open:
        return StoreStatus(is_open=True, message='', next_open_time=None)

    opens_at = format_time_12h(store_settings.open_time)
    return StoreStatus(
        is_open=False,
        message=f'{store_settings.closed_message} Opens at {opens_at}.',
        next_open_time=opens_at,
    )


def default_store_settings() -> StoreSettings:
    return StoreSettings(
        open_time=settings.store_open_time_default,
        close_time=settings.store_close_time_default,
        force_status=ForceStatus(settings.store_force_status_default),
        closed_message=settings.store_closed_message_default,
    )


def _valid_time_or_default(raw: str | None, default: str, key: str) -> str:
    if raw is None:
        return default
    try:
        parse_hhmm(raw)
    except ValueError:
        logger.warning('Ignoring malformed store setting %s=%r', key, raw)
        return default
    return raw.strip()


def load_store_settings(db: Session) -> StoreSettings:
    rows = db.execute(select(StoreSetting.setting_key, StoreSetting.setting_value)).all()
    values = {row.setting_key: row.setting_value for row in rows}
    defaults = default_store_settings()

    force_raw = (values.get(FORCE_STATUS_KEY) or defaults.force_status.value).strip().lower()
    try:
        force_status = ForceStatus(force_raw)
    except ValueError:
        logger.warning('Ignoring malformed store setting %s=%r', FORCE_STATUS_KEY, force_raw)
        force_status = defaults.force_status

    return StoreSettings(
        open_time=_valid_time_or_default(values.get(OPEN_TIME_KEY), defaults.open_time, OPEN_TIME_KEY),
        close_time=_valid_time_or_default(values.get(CLOSE_TIME_KEY), defaults.close_time, CLOSE_TIME_KEY),
        force_status=force_status,
        closed_message=values.get(CLOSED_MESSAGE_KEY) or defaults.closed_message,
    )


def _upsert_setting(db: Session, *, key: str, value: str, user_id: int | None) -> None:
    row = db.execute(select(StoreSetting).where(StoreSetting.setting_key == key)).scalar_one_or_none()
    if row is None:
        db.add(StoreSetting(setting_key=key, setting_value=value, updated_by_user_id=user_id))
        return
    row.setting_value = value
    row.updated_by_user_id = user_id
    row.updated_at = datetime.now(tz=timezone.utc)


def update_store_settings(
    db: Session,
    *,
    updated_by_user_id: int | None,
    open_time: str | None = None,
    close_time: str | None = None,
    force_status: str | None = None,
    closed_message: str | None = None,
) -> StoreSettings:
    updates: dict[str, str] = {}
    if open_time is not None:
        parse_hhmm(open_time)
        updates[OPEN_TIME_KEY] = open_time.strip()
    if close_time is not None:
        parse_hhmm(close_time)
        updates[CLOSE_TIME_KEY] = close_time.strip()
    if force_status is not None:
        try:
            updates[FORCE_STATUS_KEY] = ForceStatus(force_status.strip().lower()).value
        except ValueError as exc:
            raise ValueError('Force status must be auto, open or closed') from exc
    if closed_message is not None:
        message = closed_message.strip()
        if not message:
            raise ValueError('Closed message cannot be empty')
        updates[CLOSED_MESSAGE_KEY] = message

    for key, value in updates.items():
        _upsert_setting(db, key=key, value=value, user_id=updated_by_user_id)
    db.flush()
    return load_store_settings(db)


def local_now() -> datetime:
    if settings.store_timezone:
        return datetime.now(tz=ZoneInfo(settings.store_timezone))
    return datetime.now().astimezone()


def current_store_status(db: Session, *, now: datetime | None = None) -> StoreStatus:
    return evaluate_store_status(now or local_now(), load_store_settings(db))
