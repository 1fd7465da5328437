from typing import Optional
from datetime import datetime
from .utils import now_utc
from sqlmodel import SQLModel, Field
from sqlalchemy import UniqueConstraint


class Task(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # list_name and owner_id together identify the list a task belongs to;
    # neither changes after creation.
    list_name: str = Field(index=True)
    text: str
    done: bool = Field(default=False)
    # NULL is the anonymous scope used when login is not required.
    owner_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime | None = Field(default_factory=now_utc)


class User(SQLModel, table=True):
    """Application user, created at registration or first OAuth login."""
    __table_args__ = (UniqueConstraint('oauth_provider', 'oauth_subject'),)

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, sa_column_kwargs={"unique": True})
    # salted one-way hash; NULL for users that only sign in via OAuth
    password_hash: Optional[str] = None
    oauth_provider: Optional[str] = None
    oauth_subject: Optional[str] = None
    created_at: datetime | None = Field(default_factory=now_utc)

    @property
    def owner_key(self) -> str:
        return str(self.id)


class Session(SQLModel, table=True):
    """Server-side session binding an opaque cookie token to a user.

    Only the minimal ``{user_id, username}`` pair is stored; the full user is
    loaded again on each request.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    session_token: str = Field(sa_column_kwargs={"unique": True, "index": True})
    user_id: int = Field(foreign_key="user.id", index=True)
    username: str
    created_at: datetime | None = Field(default_factory=now_utc)
    expires_at: Optional[datetime] = None
