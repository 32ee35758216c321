from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from canteen.config import settings
from canteen.db import get_db
from canteen.dependencies import get_client_ip
from canteen.models import User
from canteen.security.csrf import verify_csrf
from canteen.security.passwords import verify_password
from canteen.security.sessions import create_web_session, revoke_web_session
from canteen.services.audit_service import log_audit, log_auth_event

router = APIRouter(tags=['auth'])

INVALID_CREDENTIALS = {'detail': 'Invalid email or password'}


@router.post('/login')
async def login_submit(
    request: Request,
    db: Session = Depends(get_db),
    _: None = Depends(verify_csrf),
):
    form = await request.form()
    email = str(form.get('email', '')).strip().lower()
    password = str(form.get('password', ''))
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
    failure_reason = None
    if not user:
        failure_reason = 'UNKNOWN_EMAIL'
    elif not user.active:
        failure_reason = 'INACTIVE_USER'
    else:
        valid, refreshed_hash = verify_password(password, user.password_hash)
        if not valid:
            failure_reason = 'BAD_PASSWORD'
        elif refreshed_hash:
            user.password_hash = refreshed_hash

    if failure_reason:
        log_auth_event(
            db,
            attempted_email=email,
            success=False,
            failure_reason=failure_reason,
            user_id=user.id if user else None,
            ip=ip,
            user_agent=user_agent,
        )
        db.commit()
        return JSONResponse(INVALID_CREDENTIALS, status_code=401)

    token = create_web_session(db, user.id, ip=ip, user_agent=user_agent)
    log_auth_event(
        db,
        attempted_email=email,
        success=True,
        failure_reason=None,
        user_id=user.id,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(
        db,
        actor_user_id=user.id,
        action='AUTH_LOGIN',
        order_id=None,
        ip=ip,
        metadata={'email': email},
    )
    db.commit()

    response = JSONResponse({'id': user.id, 'email': user.email, 'role': user.role.value})
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        max_age=settings.session_ttl_minutes * 60,
    )
    return response


@router.post('/logout')
def logout(request: Request, db: Session = Depends(get_db), _: None = Depends(verify_csrf)):
    principal = getattr(request.state, 'principal', None)
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        revoke_web_session(db, token)

    log_audit(
        db,
        actor_user_id=principal.id if principal else None,
        action='AUTH_LOGOUT',
        order_id=None,
        ip=get_client_ip(request),
        metadata={},
    )
    db.commit()

    response = JSONResponse({'ok': True})
    response.delete_cookie(settings.session_cookie_name)
    return response
