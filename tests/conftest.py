import sys
import pathlib
import warnings

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from todo_lists.auth import AuthGate, UserAuthContext
from todo_lists.config import Settings
from todo_lists.db import Database
from todo_lists.main import create_app
from todo_lists.models import User
from todo_lists.policy import ListPolicy
from todo_lists.store import TaskStore

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except ImportError:
    pass

TEST_SECRET_KEY = 'test-secret-key-for-unit-tests'


@pytest.fixture
def settings():
    return Settings(secret_key=TEST_SECRET_KEY)


@pytest.fixture
def login_settings():
    return Settings(secret_key=TEST_SECRET_KEY, require_login=True)


@pytest_asyncio.fixture
async def db(tmp_path):
    # a fresh SQLite file per test keeps tests independent
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await database.init()
    yield database
    await database.dispose()


@pytest.fixture
def store(db):
    return TaskStore(db)


@pytest.fixture
def policy(store, settings):
    return ListPolicy(store, settings)


@pytest.fixture
def auth(db, settings):
    return AuthGate(db, settings)


@pytest.fixture
def user_context():
    """Factory for auth contexts of users that only need an id (no database row)."""
    def make(user_id: int, username: str | None = None) -> UserAuthContext:
        return UserAuthContext(User(id=user_id, username=username or f'user{user_id}'))
    return make


@pytest_asyncio.fixture
async def client(db, settings):
    """Anonymous client against an app that does not require login."""
    app = create_app(settings, database=db)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def login_app(db, login_settings):
    return create_app(login_settings, database=db)


@pytest_asyncio.fixture
async def login_as(login_app):
    """Register through the HTML form and return a client carrying the session cookie.

    Clients are closed at teardown.
    """
    clients = []

    async def make(username: str, password: str) -> AsyncClient:
        ac = AsyncClient(transport=ASGITransport(app=login_app), base_url="http://test")
        clients.append(ac)
        r = await ac.post('/register', data={'username': username, 'password': password})
        assert r.status_code == 303
        assert ac.cookies.get('session_token')
        return ac

    yield make
    for ac in clients:
        await ac.aclose()
