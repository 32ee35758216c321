from __future__ import annotations

from functools import lru_cache

from canteen.config import settings
from canteen.services.push_service import HttpPushProvider, LogPushProvider


@lru_cache(maxsize=1)
def get_push_provider():
    provider = settings.push_provider.strip().lower()
    if provider == 'http':
        return HttpPushProvider()
    return LogPushProvider()
