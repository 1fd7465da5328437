from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
import logging
import secrets

from fastapi import Request
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import delete as sqlalchemy_delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from .config import Settings
from .db import Database
from .errors import InvalidCredentials, UsernameTaken, ValidationError
from .models import Session, User

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# prefer a pure-Python, widely-available scheme for tests and portability;
# keep bcrypt as a fallback if available.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


class AuthContext(Protocol):
    """Identity of the caller of a list operation."""

    def is_authenticated(self) -> bool: ...

    def current_user_id(self) -> Optional[str]: ...


class _AnonymousContext:
    def is_authenticated(self) -> bool:
        return False

    def current_user_id(self) -> Optional[str]:
        return None


ANONYMOUS = _AnonymousContext()


class UserAuthContext:
    def __init__(self, user: User):
        self.user = user

    def is_authenticated(self) -> bool:
        return True

    def current_user_id(self) -> Optional[str]:
        return self.user.owner_key


class AuthGate:
    """Local credentials, OAuth provisioning and server-side sessions."""

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self.db.session() as sess:
            q = await sess.exec(select(User).where(User.username == username))
            return q.first()

    async def register(self, username: str, password: str) -> User:
        username = (username or '').strip()
        if not username or not password:
            raise ValidationError('username and password are required')
        user = User(username=username, password_hash=pwd_context.hash(password))
        async with self.db.session() as sess:
            sess.add(user)
            try:
                await sess.commit()
            except IntegrityError:
                await sess.rollback()
                raise UsernameTaken(f'username {username!r} is already taken')
            await sess.refresh(user)
        logger.info('registered user %s (id=%s)', user.username, user.id)
        return user

    async def authenticate(self, username: str, password: str) -> User:
        user = await self.get_user_by_username(username)
        if not user or not user.password_hash:
            logger.info('login failed for %r: no such local user', username)
            raise InvalidCredentials('incorrect username or password')
        try:
            ok, new_hash = pwd_context.verify_and_update(password, user.password_hash)
        except ValueError:
            # stored value is not a hash any configured scheme recognises
            ok, new_hash = False, None
        if not ok:
            logger.info('login failed for %r: bad password', username)
            raise InvalidCredentials('incorrect username or password')
        if new_hash:
            async with self.db.session() as sess:
                user.password_hash = new_hash
                sess.add(user)
                await sess.commit()
                await sess.refresh(user)
            logger.info('upgraded password hash for %s', user.username)
        return user

    async def _get_by_identity(self, provider: str, subject: str) -> Optional[User]:
        async with self.db.session() as sess:
            q = await sess.exec(
                select(User).where(User.oauth_provider == provider).where(User.oauth_subject == subject)
            )
            return q.first()

    async def authenticate_or_provision(self, provider: str, subject: str, username: Optional[str] = None) -> User:
        """Return the user bound to an external identity, creating it on first login."""
        if not provider or not subject:
            raise ValidationError('provider and subject are required')
        user = await self._get_by_identity(provider, subject)
        if user:
            return user
        fallback = f"{provider}:{subject}"
        candidates = [username, fallback] if username and username != fallback else [fallback]
        for name in candidates:
            user = User(username=name, oauth_provider=provider, oauth_subject=subject)
            async with self.db.session() as sess:
                sess.add(user)
                try:
                    await sess.commit()
                except IntegrityError:
                    await sess.rollback()
                else:
                    await sess.refresh(user)
                    logger.info('provisioned user %s for %s identity', user.username, provider)
                    return user
            # either a concurrent first login won the insert or the name is taken
            existing = await self._get_by_identity(provider, subject)
            if existing:
                return existing
        raise UsernameTaken(f'cannot provision a username for {provider} identity')

    async def create_session(self, user: User) -> str:
        """Create a server-side session and return its token."""
        sess_token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=self.settings.session_expire_minutes)
        async with self.db.session() as s:
            s.add(Session(session_token=sess_token, user_id=user.id, username=user.username, expires_at=expires_at))
            await s.commit()
        return sess_token

    async def get_user_by_session_token(self, session_token: str) -> Optional[User]:
        async with self.db.session() as s:
            q = await s.exec(select(Session).where(Session.session_token == session_token))
            sess_row = q.first()
            if not sess_row:
                return None
            expires_at = sess_row.expires_at
            # SQLite hands datetimes back without tzinfo
            if expires_at is not None and expires_at.tzinfo is None:
                expires_at = expires_at.replace(tzinfo=timezone.utc)
            if expires_at and expires_at < datetime.now(timezone.utc):
                try:
                    await s.exec(sqlalchemy_delete(Session).where(Session.session_token == session_token))
                    await s.commit()
                except Exception:
                    logger.exception("failed to delete expired session for user %s", sess_row.username)
                return None
            return await s.get(User, sess_row.user_id)

    async def delete_session(self, session_token: str) -> None:
        async with self.db.session() as s:
            await s.exec(sqlalchemy_delete(Session).where(Session.session_token == session_token))
            await s.commit()

    def _encode(self, claims: dict, minutes: int) -> str:
        to_encode = dict(claims)
        expire = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        # RFC 7519 NumericDate (seconds since epoch)
        to_encode["exp"] = int(expire.timestamp())
        return jwt.encode(to_encode, self.settings.secret_key, algorithm=ALGORITHM)

    def create_access_token(self, username: str) -> str:
        return self._encode({"sub": username}, self.settings.access_token_expire_minutes)

    def create_csrf_token(self, username: str) -> str:
        return self._encode({"sub": username, "type": "csrf"}, self.settings.csrf_token_expire_minutes)

    def verify_csrf_token(self, token: Optional[str], username: str) -> bool:
        if not token:
            return False
        try:
            payload = jwt.decode(token, self.settings.secret_key, algorithms=[ALGORITHM])
        except JWTError as e:
            logger.info('csrf token rejected for %s: %s', username, e)
            return False
        return payload.get("type") == "csrf" and payload.get("sub") == username

    async def get_user_by_access_token(self, token: str) -> Optional[User]:
        try:
            payload = jwt.decode(token, self.settings.secret_key, algorithms=[ALGORITHM])
        except JWTError:
            return None
        # CSRF tokens share the signing key but never authenticate requests
        if payload.get("type") is not None or not payload.get("sub"):
            return None
        return await self.get_user_by_username(payload["sub"])

    async def current_user(self, request: Request) -> Optional[User]:
        """Resolve the caller: session cookie first, then a bearer token."""
        session_token = request.cookies.get("session_token")
        if session_token:
            user = await self.get_user_by_session_token(session_token)
            if user:
                return user
        header = request.headers.get("Authorization") or ''
        scheme, _, token = header.partition(' ')
        if scheme.lower() == 'bearer' and token:
            return await self.get_user_by_access_token(token.strip())
        return None


def context_for(user: Optional[User]) -> AuthContext:
    return UserAuthContext(user) if user else ANONYMOUS
