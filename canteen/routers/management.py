from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from canteen.auth import Principal, Role, require_role
from canteen.db import SessionLocal, get_db
from canteen.dependencies import get_change_feed, get_client_ip, get_push_provider
from canteen.errors import InvalidTransitionError, PersistenceError, ValidationError
from canteen.models import OrderStatus
from canteen.routers.alert_socket import FORBIDDEN_CLOSE_CODE, UNAUTHORIZED_CLOSE_CODE, authenticate_websocket, run_alert_socket
from canteen.security.csrf import verify_csrf
from canteen.services.alert_service import ObserverKind, ObserverState
from canteen.services.audit_service import log_audit
from canteen.services.order_admin_service import cancel_order, change_order_status, mark_items_out_of_stock, review_order
from canteen.services.order_query_service import dashboard_summary, get_order, list_orders, order_to_dict
from canteen.services.preference_service import get_flag
from canteen.services.push_service import PushMessage, PushProvider, PushScheduler, deliver_push
from canteen.services.realtime_service import ORDERS_TABLE, ChangeFeed, ChangeType
from canteen.services.store_status_service import evaluate_store_status, format_time_12h, load_store_settings, local_now, update_store_settings

router = APIRouter(prefix='/management', tags=['management'])
admin_access = require_role(Role.ADMIN)


def _parse_item_ids(values: list) -> set[int]:
    ids: set[int] = set()
    for raw in values:
        for part in str(raw).split(','):
            part = part.strip()
            if not part:
                continue
            try:
                ids.add(int(part))
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=f'Invalid item id {part!r}') from exc
    return ids


def _translate_order_errors(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidTransitionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, PersistenceError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=404, detail=str(exc))


def _push_later(background_tasks: BackgroundTasks, provider: PushProvider) -> PushScheduler:
    # Sync tasks run in the threadpool once the response has been sent.
    def schedule(message: PushMessage) -> None:
        background_tasks.add_task(deliver_push, SessionLocal, provider, message)

    return schedule


def _settings_payload(store_settings) -> dict:
    current = evaluate_store_status(local_now(), store_settings)
    return {
        'open_time': store_settings.open_time,
        'close_time': store_settings.close_time,
        'open_time_display': format_time_12h(store_settings.open_time),
        'close_time_display': format_time_12h(store_settings.close_time),
        'force_status': store_settings.force_status.value,
        'closed_message': store_settings.closed_message,
        'is_open': current.is_open,
        'message': current.message,
    }


@router.get('/summary')
def summary(_: Principal = Depends(admin_access), db: Session = Depends(get_db)):
    return dashboard_summary(db)


@router.get('/orders')
def orders(
    status_filter: str | None = None,
    limit: int = 200,
    _: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    order_status = None
    if status_filter and status_filter != 'all':
        try:
            order_status = OrderStatus(status_filter)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f'Unknown status {status_filter!r}') from exc
    rows = list_orders(db, status=order_status, limit=max(1, min(limit, 500)))
    return [order_to_dict(order) for order in rows]


@router.get('/orders/{order_id}')
def order_detail(order_id: int, _: Principal = Depends(admin_access), db: Session = Depends(get_db)):
    try:
        order = get_order(db, order_id=order_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return order_to_dict(order)


@router.post('/orders/{order_id}/status')
async def order_status_update(
    order_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    push_provider: PushProvider = Depends(get_push_provider),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    try:
        order = change_order_status(
            db,
            order_id=order_id,
            new_status=str(form.get('status', '')).strip(),
            actor_user_id=principal.id,
            ip=get_client_ip(request),
            feed=feed,
            schedule_push=_push_later(background_tasks, push_provider),
        )
    except (ValueError, PersistenceError) as exc:
        db.rollback()
        raise _translate_order_errors(exc) from exc
    return order_to_dict(order)


@router.post('/orders/{order_id}/review')
async def order_review(
    order_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    push_provider: PushProvider = Depends(get_push_provider),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    out_of_stock = _parse_item_ids(form.getlist('out_of_stock_item_ids'))
    try:
        order = review_order(
            db,
            order_id=order_id,
            out_of_stock_item_ids=out_of_stock,
            actor_user_id=principal.id,
            ip=get_client_ip(request),
            feed=feed,
            schedule_push=_push_later(background_tasks, push_provider),
        )
    except (ValueError, PersistenceError) as exc:
        db.rollback()
        raise _translate_order_errors(exc) from exc
    return order_to_dict(order)


@router.post('/orders/{order_id}/cancel')
def order_cancel(
    order_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    push_provider: PushProvider = Depends(get_push_provider),
    _: None = Depends(verify_csrf),
):
    try:
        order = cancel_order(
            db,
            order_id=order_id,
            actor_user_id=principal.id,
            ip=get_client_ip(request),
            feed=feed,
            schedule_push=_push_later(background_tasks, push_provider),
        )
    except (ValueError, PersistenceError) as exc:
        db.rollback()
        raise _translate_order_errors(exc) from exc
    return order_to_dict(order)


@router.post('/orders/{order_id}/out-of-stock')
async def order_items_out_of_stock(
    order_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    push_provider: PushProvider = Depends(get_push_provider),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    item_ids = _parse_item_ids(form.getlist('item_ids'))
    try:
        order = mark_items_out_of_stock(
            db,
            order_id=order_id,
            item_ids=item_ids,
            actor_user_id=principal.id,
            ip=get_client_ip(request),
            feed=feed,
            schedule_push=_push_later(background_tasks, push_provider),
        )
    except (ValueError, PersistenceError) as exc:
        db.rollback()
        raise _translate_order_errors(exc) from exc
    return order_to_dict(order)


@router.get('/settings/store')
def store_settings(_: Principal = Depends(admin_access), db: Session = Depends(get_db)):
    return _settings_payload(load_store_settings(db))


@router.put('/settings/store')
async def store_settings_update(
    request: Request,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    changes = {
        field: form.get(field)
        for field in ('open_time', 'close_time', 'force_status', 'closed_message')
        if form.get(field) is not None
    }
    try:
        updated = update_store_settings(db, updated_by_user_id=principal.id, **changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    log_audit(
        db,
        actor_user_id=principal.id,
        action='STORE_SETTINGS_UPDATED',
        order_id=None,
        ip=get_client_ip(request),
        metadata=changes,
    )
    db.commit()
    return _settings_payload(updated)


def _admin_alert_baseline(user_id: int) -> ObserverState:
    """Orders already pending when the socket opens are known, so they never alert."""
    with SessionLocal() as db:
        pending = [order.id for order in list_orders(db, status=OrderStatus.PENDING)]
        muted = get_flag(db, user_id=user_id, key=ObserverKind.ADMIN.mute_preference_key)
    return ObserverState(known_ids=frozenset(pending), muted=muted)


@router.websocket('/alerts/ws')
async def order_alerts_socket(websocket: WebSocket):
    principal = await run_in_threadpool(authenticate_websocket, websocket)
    if principal is None:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return
    if principal.role != Role.ADMIN:
        await websocket.close(code=FORBIDDEN_CLOSE_CODE)
        return

    initial_state = await run_in_threadpool(_admin_alert_baseline, principal.id)
    await websocket.accept()
    await run_alert_socket(
        websocket,
        feed=websocket.app.state.change_feed,
        principal=principal,
        kind=ObserverKind.ADMIN,
        table=ORDERS_TABLE,
        initial_state=initial_state,
        event_types=(ChangeType.INSERT,),
    )
