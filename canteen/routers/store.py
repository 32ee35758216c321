from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy import select
from sqlalchemy.orm import Session

from canteen.auth import Principal, Role, require_role
from canteen.config import settings
from canteen.db import SessionLocal, get_db
from canteen.dependencies import get_change_feed, get_client_ip
from canteen.errors import PersistenceError, StoreClosedError, ValidationError
from canteen.models import Product
from canteen.routers.alert_socket import FORBIDDEN_CLOSE_CODE, UNAUTHORIZED_CLOSE_CODE, authenticate_websocket, run_alert_socket
from canteen.security.csrf import verify_csrf
from canteen.services.alert_service import ObserverKind, ObserverState
from canteen.services.cart_service import (
    add_to_cart,
    cart_item_to_dict,
    cart_totals,
    clear_cart,
    list_cart,
    remove_from_cart,
    update_quantity,
)
from canteen.services.notification_service import (
    list_notifications,
    list_unread_ids,
    mark_all_as_read,
    mark_as_read,
    notification_glyph,
    notification_to_dict,
    unread_count,
)
from canteen.services.order_placement_service import ORDER_FAILED_MESSAGE, place_order
from canteen.services.order_query_service import list_orders, order_to_dict
from canteen.services.preference_service import get_flag, get_preference, set_preference
from canteen.services.profile_service import get_or_create_profile, update_profile
from canteen.services.push_service import delete_subscription, save_subscription
from canteen.services.realtime_service import NOTIFICATIONS_TABLE, ChangeEvent, ChangeFeed, ChangeType, equals_filter
from canteen.services.store_status_service import current_store_status, format_time_12h, load_store_settings

router = APIRouter(prefix='/store', tags=['store'])
customer_access = require_role(Role.CUSTOMER, Role.ADMIN)


def _parse_int(value, *, field: str) -> int:
    raw = str(value if value is not None else '').strip()
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f'Invalid {field}') from exc


def _cart_payload(db: Session, user_id: int) -> dict:
    lines = list_cart(db, user_id=user_id)
    total_items, total_price = cart_totals(lines)
    return {
        'items': [cart_item_to_dict(line) for line in lines],
        'total_items': total_items,
        'total_price': total_price,
    }


@router.get('/status')
def store_status(db: Session = Depends(get_db)):
    store_settings = load_store_settings(db)
    result = current_store_status(db)
    return {
        'is_open': result.is_open,
        'message': result.message,
        'next_open_time': result.next_open_time,
        'open_time': format_time_12h(store_settings.open_time),
        'close_time': format_time_12h(store_settings.close_time),
        'force_status': store_settings.force_status.value,
    }


@router.get('/products')
def products(
    category: str | None = None,
    _: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
):
    query = select(Product).where(Product.active.is_(True)).order_by(Product.name.asc())
    if category:
        query = query.where(Product.category == category)
    rows = db.execute(query).scalars().all()
    return [
        {
            'id': product.id,
            'name': product.name,
            'quantity': product.quantity_label,
            'price': product.price,
            'image': product.image_url,
            'category': product.category,
        }
        for product in rows
    ]


@router.get('/cart')
def cart(principal: Principal = Depends(customer_access), db: Session = Depends(get_db)):
    return _cart_payload(db, principal.id)


@router.post('/cart')
async def cart_add(
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    product_id = _parse_int(form.get('product_id'), field='product')
    count = _parse_int(form.get('count', 1), field='quantity')
    try:
        add_to_cart(db, user_id=principal.id, product_id=product_id, count=count)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _cart_payload(db, principal.id)


@router.patch('/cart/{product_id}')
async def cart_update(
    product_id: int,
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    count = _parse_int(form.get('count'), field='quantity')
    try:
        update_quantity(db, user_id=principal.id, product_id=product_id, count=count)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return _cart_payload(db, principal.id)


@router.delete('/cart/{product_id}')
def cart_remove(
    product_id: int,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    remove_from_cart(db, user_id=principal.id, product_id=product_id)
    db.commit()
    return _cart_payload(db, principal.id)


@router.delete('/cart')
def cart_clear(
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    clear_cart(db, user_id=principal.id)
    db.commit()
    return _cart_payload(db, principal.id)


@router.post('/orders', status_code=status.HTTP_201_CREATED)
async def checkout(
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    try:
        order = place_order(
            db,
            user_id=principal.id,
            delivery_address=str(form.get('delivery_address', '')),
            feed=feed,
            ip=get_client_ip(request),
        )
    except StoreClosedError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=ORDER_FAILED_MESSAGE) from exc
    return order_to_dict(order)


@router.get('/orders')
def my_orders(principal: Principal = Depends(customer_access), db: Session = Depends(get_db)):
    return [order_to_dict(order) for order in list_orders(db, user_id=principal.id)]


@router.get('/notifications')
def notifications(
    limit: int = 20,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
):
    rows = list_notifications(db, user_id=principal.id, limit=max(1, min(limit, 100)))
    return {
        'unread_count': unread_count(db, user_id=principal.id),
        'notifications': [
            {**notification_to_dict(row), 'glyph': notification_glyph(row.type)} for row in rows
        ],
    }


@router.post('/notifications/{notification_id}/read')
def notification_read(
    notification_id: int,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    _: None = Depends(verify_csrf),
):
    try:
        row = mark_as_read(db, user_id=principal.id, notification_id=notification_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    feed.publish(ChangeEvent(table=NOTIFICATIONS_TABLE, event_type=ChangeType.UPDATE, row=notification_to_dict(row)))
    return {'unread_count': unread_count(db, user_id=principal.id)}


@router.post('/notifications/read-all')
def notifications_read_all(
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
    _: None = Depends(verify_csrf),
):
    ids = mark_all_as_read(db, user_id=principal.id)
    db.commit()
    for notification_id in ids:
        feed.publish(
            ChangeEvent(
                table=NOTIFICATIONS_TABLE,
                event_type=ChangeType.UPDATE,
                row={'id': notification_id, 'user_id': principal.id, 'is_read': True},
            )
        )
    return {'marked': len(ids), 'unread_count': 0}


@router.get('/preferences/{key}')
def preference(key: str, principal: Principal = Depends(customer_access), db: Session = Depends(get_db)):
    try:
        value = get_preference(db, user_id=principal.id, key=key)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {'key': key, 'value': value}


@router.put('/preferences/{key}')
async def preference_update(
    key: str,
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    try:
        row = set_preference(db, user_id=principal.id, key=key, value=str(form.get('value', '')))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    db.commit()
    return {'key': row.key, 'value': row.value}


def _profile_payload(profile) -> dict:
    return {'full_name': profile.full_name, 'phone': profile.phone, 'address': profile.address}


@router.get('/profile')
def profile(principal: Principal = Depends(customer_access), db: Session = Depends(get_db)):
    row = get_or_create_profile(db, user_id=principal.id)
    db.commit()
    return _profile_payload(row)


@router.put('/profile')
async def profile_update(
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    try:
        row = update_profile(
            db,
            user_id=principal.id,
            full_name=form.get('full_name'),
            phone=form.get('phone'),
            address=form.get('address'),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return _profile_payload(row)


@router.get('/push-subscriptions/public-key')
def push_public_key(_: Principal = Depends(customer_access)):
    return {'public_key': settings.vapid_public_key}


@router.post('/push-subscriptions', status_code=status.HTTP_201_CREATED)
async def push_subscribe(
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    try:
        row = save_subscription(
            db,
            user_id=principal.id,
            endpoint=str(form.get('endpoint', '')),
            p256dh=str(form.get('p256dh', '')),
            auth=str(form.get('auth', '')),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    db.commit()
    return {'id': row.id, 'endpoint': row.endpoint}


@router.delete('/push-subscriptions')
async def push_unsubscribe(
    request: Request,
    principal: Principal = Depends(customer_access),
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    removed = delete_subscription(db, user_id=principal.id, endpoint=str(form.get('endpoint', '')))
    db.commit()
    return {'removed': removed}


def _customer_alert_baseline(user_id: int) -> ObserverState:
    with SessionLocal() as db:
        recent = [notification_to_dict(row) for row in list_notifications(db, user_id=user_id)]
        unread = list_unread_ids(db, user_id=user_id)
        muted = get_flag(db, user_id=user_id, key=ObserverKind.CUSTOMER.mute_preference_key)
    return ObserverState.from_notifications(recent, unread_ids=unread, muted=muted)


@router.websocket('/notifications/ws')
async def notifications_socket(websocket: WebSocket):
    principal = await run_in_threadpool(authenticate_websocket, websocket)
    if principal is None:
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE)
        return
    if principal.role not in {Role.CUSTOMER, Role.ADMIN}:
        await websocket.close(code=FORBIDDEN_CLOSE_CODE)
        return

    initial_state = await run_in_threadpool(_customer_alert_baseline, principal.id)
    await websocket.accept()
    await run_alert_socket(
        websocket,
        feed=websocket.app.state.change_feed,
        principal=principal,
        kind=ObserverKind.CUSTOMER,
        table=NOTIFICATIONS_TABLE,
        initial_state=initial_state,
        row_filter=equals_filter('user_id', principal.id),
    )
