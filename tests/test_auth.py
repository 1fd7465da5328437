import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from todo_lists.auth import AuthGate, pwd_context
from todo_lists.config import Settings
from todo_lists.errors import InvalidCredentials, UsernameTaken, ValidationError
from todo_lists.models import Session, User

pytestmark = pytest.mark.asyncio


async def test_register_and_authenticate(auth):
    await auth.register('alice', 'pw1')
    user = await auth.authenticate('alice', 'pw1')
    assert user.username == 'alice'

    with pytest.raises(InvalidCredentials):
        await auth.authenticate('alice', 'wrong')
    with pytest.raises(InvalidCredentials):
        await auth.authenticate('nobody', 'pw1')


async def test_password_is_stored_hashed(auth, db):
    await auth.register('alice', 'pw1')
    async with db.session() as sess:
        u = (await sess.exec(select(User).where(User.username == 'alice'))).first()
    assert u.password_hash != 'pw1'
    assert pwd_context.verify('pw1', u.password_hash)
    # a second registration with the same password gets a different salt
    await auth.register('bob', 'pw1')
    async with db.session() as sess:
        b = (await sess.exec(select(User).where(User.username == 'bob'))).first()
    assert b.password_hash != u.password_hash


async def test_plaintext_credential_never_matches(auth, db):
    async with db.session() as sess:
        sess.add(User(username='legacy', password_hash='pw1'))
        await sess.commit()
    with pytest.raises(InvalidCredentials):
        await auth.authenticate('legacy', 'pw1')


async def test_register_validation(auth):
    with pytest.raises(ValidationError):
        await auth.register('', 'pw')
    with pytest.raises(ValidationError):
        await auth.register('carol', '')
    await auth.register('carol', 'pw')
    with pytest.raises(UsernameTaken):
        await auth.register('carol', 'other')


async def test_oauth_provision_is_idempotent(auth):
    first = await auth.authenticate_or_provision('github', '12345', 'octo')
    again = await auth.authenticate_or_provision('github', '12345', 'octo')
    assert first.id == again.id
    assert first.username == 'octo'
    # same subject at a different provider is a different user
    other = await auth.authenticate_or_provision('google', '12345')
    assert other.id != first.id
    assert other.username == 'google:12345'


async def test_oauth_user_cannot_password_login(auth):
    await auth.authenticate_or_provision('github', '1', 'octo')
    with pytest.raises(InvalidCredentials):
        await auth.authenticate('octo', '')


async def test_oauth_username_collision_falls_back(auth):
    await auth.register('dave', 'pw')
    user = await auth.authenticate_or_provision('github', '77', 'dave')
    assert user.username == 'github:77'


async def test_oauth_concurrent_first_login(auth):
    users = await asyncio.gather(*(auth.authenticate_or_provision('github', '99') for _ in range(5)))
    assert len({u.id for u in users}) == 1


async def test_session_round_trip(auth):
    user = await auth.register('erin', 'pw')
    token = await auth.create_session(user)
    loaded = await auth.get_user_by_session_token(token)
    assert loaded.id == user.id
    await auth.delete_session(token)
    assert await auth.get_user_by_session_token(token) is None
    assert await auth.get_user_by_session_token('not-a-token') is None


async def test_expired_session_is_removed(auth, db):
    user = await auth.register('frank', 'pw')
    token = await auth.create_session(user)
    async with db.session() as sess:
        row = (await sess.exec(select(Session).where(Session.session_token == token))).first()
        row.expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
        sess.add(row)
        await sess.commit()
    assert await auth.get_user_by_session_token(token) is None
    async with db.session() as sess:
        assert (await sess.exec(select(Session).where(Session.session_token == token))).first() is None


async def test_csrf_tokens(auth):
    token = auth.create_csrf_token('alice')
    assert auth.verify_csrf_token(token, 'alice')
    assert not auth.verify_csrf_token(token, 'bob')
    assert not auth.verify_csrf_token(None, 'alice')
    assert not auth.verify_csrf_token('garbage', 'alice')
    other_key = AuthGate(auth.db, Settings(secret_key='another-key'))
    assert not other_key.verify_csrf_token(token, 'alice')


async def test_access_token_resolves_user(auth):
    await auth.register('gina', 'pw')
    token = auth.create_access_token('gina')
    user = await auth.get_user_by_access_token(token)
    assert user.username == 'gina'
    # a csrf token must not authenticate
    assert await auth.get_user_by_access_token(auth.create_csrf_token('gina')) is None
