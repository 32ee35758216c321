from fastapi import Request

from canteen.services.push_service import PushProvider
from canteen.services.realtime_service import ChangeFeed


def get_change_feed(request: Request) -> ChangeFeed:
    return request.app.state.change_feed


def get_push_provider(request: Request) -> PushProvider:
    return request.app.state.push_provider


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None
