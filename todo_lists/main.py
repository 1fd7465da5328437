from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
from urllib.parse import quote
import logging
import sys

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel

from .auth import AuthGate, context_for
from .config import INSECURE_SECRET_KEY, Settings, get_settings
from .db import Database
from .errors import (
    InvalidCredentials,
    NotFoundError,
    Unauthenticated,
    ValidationError,
)
from .models import User
from .policy import ListPolicy, decode_checkbox
from .store import TaskStore

logger = logging.getLogger(__name__)

TEMPLATES = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))


def _configure_logging(level: str) -> None:
    # Ensure INFO-level messages from the package appear on the server console
    # when no handlers are configured.
    pkg_logger = logging.getLogger('todo_lists')
    if not pkg_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
        handler.setFormatter(formatter)
        pkg_logger.addHandler(handler)
    pkg_logger.setLevel(getattr(logging, level, logging.INFO))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    # The application should not start with the test fallback secret when
    # sessions actually guard data.
    if settings.require_login and settings.secret_key == INSECURE_SECRET_KEY:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    db: Database = app.state.db
    await db.init()
    logger.info('starting server using DATABASE_URL=%s require_login=%s', db.url, settings.require_login)
    try:
        yield
    finally:
        if app.state.owns_db:
            await db.dispose()


def _list_url(name: str) -> str:
    return '/' + quote(name, safe='')


def _redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=303)


def get_policy(request: Request) -> ListPolicy:
    return request.app.state.policy


def get_auth(request: Request) -> AuthGate:
    return request.app.state.auth


async def get_current_user(request: Request) -> Optional[User]:
    return await request.app.state.auth.current_user(request)


async def check_csrf(request: Request, current_user: Optional[User] = Depends(get_current_user)) -> Optional[User]:
    """Require a valid ``_csrf`` form field on cookie-authenticated posts."""
    if current_user is None or not request.cookies.get('session_token'):
        return current_user
    form = await request.form()
    token = form.get('_csrf')
    if not request.app.state.auth.verify_csrf_token(token, current_user.username):
        raise HTTPException(status_code=403, detail='invalid csrf token')
    return current_user


class TokenRequest(BaseModel):
    username: str
    password: str


def _set_login_cookies(resp, auth: AuthGate, user: User, session_token: str) -> None:
    secure = auth.settings.cookie_secure
    resp.set_cookie('session_token', session_token, httponly=True, samesite='lax', secure=secure)
    resp.set_cookie('csrf_token', auth.create_csrf_token(user.username), httponly=False, samesite='lax', secure=secure, path='/')


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Build the web app around an explicitly constructed database.

    When ``database`` is supplied the caller owns its lifecycle; otherwise
    the app creates one from ``settings.database_url`` and disposes it on
    shutdown.
    """
    settings = settings or get_settings()
    _configure_logging(settings.log_level)

    app = FastAPI(lifespan=lifespan)
    db = database or Database(settings.database_url)
    store = TaskStore(db)
    app.state.settings = settings
    app.state.db = db
    app.state.owns_db = database is None
    app.state.store = store
    app.state.policy = ListPolicy(store, settings)
    app.state.auth = AuthGate(db, settings)

    @app.exception_handler(Unauthenticated)
    async def _unauthenticated(request: Request, exc: Unauthenticated):
        if request.url.path.startswith('/api/'):
            return JSONResponse({'detail': str(exc)}, status_code=401)
        return _redirect('/login')

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return JSONResponse({'detail': str(exc)}, status_code=400)

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError):
        return JSONResponse({'detail': str(exc)}, status_code=404)

    @app.get('/')
    async def root_redirect(policy: ListPolicy = Depends(get_policy)):
        return _redirect(_list_url(policy.default_list_name))

    @app.get('/login', response_class=HTMLResponse)
    async def login_get(request: Request):
        return TEMPLATES.TemplateResponse(request, 'login.html', {"action": "/login"})

    @app.post('/login')
    async def login_post(request: Request, username: str = Form(...), password: str = Form(...),
                         auth: AuthGate = Depends(get_auth)):
        try:
            user = await auth.authenticate(username, password)
        except InvalidCredentials:
            return TEMPLATES.TemplateResponse(request, 'login.html', {"action": "/login", "error": "Invalid credentials"})
        session_token = await auth.create_session(user)
        resp = _redirect('/')
        _set_login_cookies(resp, auth, user, session_token)
        return resp

    @app.get('/register', response_class=HTMLResponse)
    async def register_get(request: Request):
        return TEMPLATES.TemplateResponse(request, 'login.html', {"action": "/register", "register": True})

    @app.post('/register')
    async def register_post(request: Request, username: str = Form(''), password: str = Form(''),
                            auth: AuthGate = Depends(get_auth)):
        try:
            user = await auth.register(username, password)
        except ValidationError as e:
            return TEMPLATES.TemplateResponse(
                request, 'login.html', {"action": "/register", "register": True, "error": str(e)}, status_code=400,
            )
        session_token = await auth.create_session(user)
        resp = _redirect('/')
        _set_login_cookies(resp, auth, user, session_token)
        return resp

    @app.post('/logout')
    async def logout(request: Request, auth: AuthGate = Depends(get_auth)):
        session_token = request.cookies.get('session_token')
        if session_token:
            await auth.delete_session(session_token)
        resp = _redirect('/login' if auth.settings.require_login else '/')
        resp.delete_cookie('session_token')
        resp.delete_cookie('csrf_token', path='/')
        return resp

    @app.post('/auth/token')
    async def login_for_access_token(req: TokenRequest, auth: AuthGate = Depends(get_auth)):
        try:
            user = await auth.authenticate(req.username, req.password)
        except InvalidCredentials:
            raise HTTPException(status_code=401, detail='Incorrect username or password')
        return {'access_token': auth.create_access_token(user.username), 'token_type': 'bearer'}

    @app.get('/api/lists/{list_name}')
    async def api_get_list(list_name: str, policy: ListPolicy = Depends(get_policy),
                           current_user: Optional[User] = Depends(get_current_user)):
        view = await policy.get_view(list_name, context_for(current_user))
        return view.model_dump()

    @app.get('/{list_name}', response_class=HTMLResponse)
    async def view_list(request: Request, list_name: str, policy: ListPolicy = Depends(get_policy),
                        current_user: Optional[User] = Depends(get_current_user)):
        view = await policy.get_view(list_name, context_for(current_user))
        csrf_token = request.app.state.auth.create_csrf_token(current_user.username) if current_user else None
        return TEMPLATES.TemplateResponse(request, 'index.html', {
            "view": view,
            "default_list_name": policy.default_list_name,
            "current_user": current_user,
            "csrf_token": csrf_token,
        })

    @app.post('/')
    async def add_item(listName: Optional[str] = Form(None), newItem: str = Form(''),
                       policy: ListPolicy = Depends(get_policy),
                       current_user: Optional[User] = Depends(check_csrf)):
        task = await policy.add_item(listName, newItem, context_for(current_user))
        return _redirect(_list_url(task.list_name))

    @app.post('/done/{list_name}/{task_id}')
    async def mark_done(list_name: str, task_id: int, done: Optional[str] = Form(None),
                        policy: ListPolicy = Depends(get_policy),
                        current_user: Optional[User] = Depends(check_csrf)):
        await policy.toggle_done(task_id, decode_checkbox(done), context_for(current_user))
        return _redirect(_list_url(policy.normalize_list_name(list_name)))

    @app.post('/prune')
    async def prune(listName: Optional[str] = Form(None), policy: ListPolicy = Depends(get_policy),
                    current_user: Optional[User] = Depends(check_csrf)):
        await policy.prune_list(listName, context_for(current_user))
        return _redirect(_list_url(policy.normalize_list_name(listName)))

    @app.post('/delete')
    async def delete_list(listName: Optional[str] = Form(None), policy: ListPolicy = Depends(get_policy),
                          current_user: Optional[User] = Depends(check_csrf)):
        await policy.delete_list(listName, context_for(current_user))
        return _redirect(_list_url(policy.default_list_name))

    return app


app = create_app()
