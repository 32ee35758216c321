from __future__ import annotations

import re
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from canteen.models import Profile

PHONE_RE = re.compile(r'^[6-9]\d{9}$')


def get_profile(db: Session, *, user_id: int) -> Profile | None:
    return db.execute(select(Profile).where(Profile.user_id == user_id)).scalar_one_or_none()


def get_or_create_profile(db: Session, *, user_id: int) -> Profile:
    profile = get_profile(db, user_id=user_id)
    if profile:
        return profile
    profile = Profile(user_id=user_id)
    db.add(profile)
    db.flush()
    return profile


def normalize_phone(raw: str) -> str:
    phone = re.sub(r'[\s-]+', '', raw or '')
    if not PHONE_RE.match(phone):
        raise ValueError('Please enter a valid 10-digit phone number')
    return phone


def update_profile(
    db: Session,
    *,
    user_id: int,
    full_name: str | None = None,
    phone: str | None = None,
    address: str | None = None,
) -> Profile:
    profile = get_or_create_profile(db, user_id=user_id)
    if full_name is not None:
        profile.full_name = full_name.strip() or None
    if phone is not None:
        profile.phone = normalize_phone(phone) if phone.strip() else None
    if address is not None:
        profile.address = address.strip() or None
    profile.updated_at = datetime.now(tz=timezone.utc)
    db.flush()
    return profile
