from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder

from canteen.auth import Principal
from canteen.config import settings
from canteen.db import SessionLocal
from canteen.security.sessions import load_principal_from_token
from canteen.services.alert_service import AlertDispatcher, FrameAlertSink, ObserverKind, ObserverState
from canteen.services.preference_service import set_flag
from canteen.services.realtime_service import ChangeEvent, ChangeFeed, ChangeType, RowFilter

logger = logging.getLogger(__name__)

# Close codes in the application range (4000-4999).
UNAUTHORIZED_CLOSE_CODE = 4401
FORBIDDEN_CLOSE_CODE = 4403


def authenticate_websocket(websocket: WebSocket) -> Principal | None:
    token = websocket.cookies.get(settings.session_cookie_name)
    with SessionLocal() as db:
        principal = load_principal_from_token(db, token)
        db.commit()
    if principal is None or not principal.active:
        return None
    return principal


def save_muted(user_id: int, kind: ObserverKind, muted: bool) -> None:
    with SessionLocal() as db:
        set_flag(db, user_id=user_id, key=kind.mute_preference_key, enabled=muted)
        db.commit()


def _state_frame(dispatcher: AlertDispatcher) -> dict:
    return {
        'kind': 'state',
        'observer': dispatcher.kind.value,
        'unread_count': dispatcher.unread_count,
        'muted': dispatcher.state.muted,
        'native_permission': dispatcher.state.native_permission,
    }


async def run_alert_socket(
    websocket: WebSocket,
    *,
    feed: ChangeFeed,
    principal: Principal,
    kind: ObserverKind,
    table: str,
    initial_state: ObserverState,
    event_types: tuple[ChangeType, ...] = (ChangeType.INSERT, ChangeType.UPDATE),
    row_filter: RowFilter | None = None,
) -> None:
    """Bridge change-feed events to one connected observer until it disconnects."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict] = asyncio.Queue()
    writes: set[asyncio.Task] = set()
    write_lock = asyncio.Lock()

    def emit(frame: dict) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, frame)

    def write_finished(task: asyncio.Task) -> None:
        writes.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning('Could not persist %s mute preference: %s', kind.value, task.exception())

    async def write_mute(muted: bool) -> None:
        # Saves land in toggle order.
        async with write_lock:
            await run_in_threadpool(save_muted, principal.id, kind, muted)

    def persist_mute(muted: bool) -> None:
        task = loop.create_task(write_mute(muted))
        writes.add(task)
        task.add_done_callback(write_finished)

    dispatcher = AlertDispatcher(kind=kind, sink=FrameAlertSink(emit), state=initial_state, on_mute_change=persist_mute)

    def handle_in_loop(event: ChangeEvent) -> None:
        # Events scheduled before close may still arrive.
        if not subscription.active:
            return
        dispatcher.handle(event)
        emit(_state_frame(dispatcher))

    subscription = feed.subscribe(
        table,
        lambda event: loop.call_soon_threadsafe(handle_in_loop, event),
        event_types=event_types,
        row_filter=row_filter,
    )

    async def pump() -> None:
        while True:
            frame = await queue.get()
            await websocket.send_json(jsonable_encoder(frame))

    async def listen() -> None:
        while True:
            message = await websocket.receive_json()
            action = message.get('action') if isinstance(message, dict) else None
            if action == 'toggle_mute':
                dispatcher.toggle_mute()
            elif action == 'mark_seen':
                dispatcher.mark_seen()
            elif action == 'permission':
                dispatcher.request_permission(lambda: str(message.get('value', 'denied')))
            else:
                continue
            emit(_state_frame(dispatcher))

    emit(_state_frame(dispatcher))
    tasks = {asyncio.create_task(pump()), asyncio.create_task(listen())}
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning('%s alert socket for user %s closed: %s', kind.value, principal.id, exc)
    finally:
        subscription.close()
        if writes:
            await asyncio.wait(set(writes))
