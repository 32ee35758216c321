import logging.config

from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from canteen.auth import get_current_principal, is_admin_role
from canteen.config import LOGGING
from canteen.routers import auth, management, store
from canteen.security.csrf import install_csrf_cookie_middleware
from canteen.security.sessions import install_auth_session_middleware
from canteen.services.provider_factory import get_push_provider
from canteen.services.realtime_service import ChangeFeed

logging.config.dictConfig(LOGGING)

app = FastAPI(title='Canteen Storefront')

app.state.change_feed = ChangeFeed()
app.state.push_provider = get_push_provider()

install_csrf_cookie_middleware(app)
install_auth_session_middleware(app)

app.include_router(auth.router)
app.include_router(store.router)
app.include_router(management.router)


@app.get('/')
def root(request: Request):
    principal = get_current_principal(request)
    home = '/management/summary' if is_admin_role(principal.role) else '/store/orders'
    return {'id': principal.id, 'email': principal.email, 'role': principal.role.value, 'home': home}


@app.get('/health')
def health():
    return {'status': 'ok'}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
