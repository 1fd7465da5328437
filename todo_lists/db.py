from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

import logging

# register tables on SQLModel.metadata before create_all runs
from . import models  # noqa: F401

logger = logging.getLogger(__name__)


class Database:
    """Owns the async engine and hands out sessions.

    Construct it with a URL, ``await init()`` before use and ``await
    dispose()`` on shutdown. The task store and auth gate receive the
    instance explicitly; nothing in the package reaches for a module-level
    engine.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: AsyncEngine | None = None
        self._sessionmaker = None

    async def init(self) -> None:
        if self.engine is not None:
            return
        # Use NullPool so pooled connections are never bound to a specific
        # event loop (tests create a new loop per test).
        self.engine = create_async_engine(self.url, echo=self.echo, future=True, poolclass=NullPool)
        self._sessionmaker = sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info('database ready at %s', self.url)

    async def dispose(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self._sessionmaker = None

    def session(self) -> AsyncSession:
        if self._sessionmaker is None:
            raise RuntimeError('Database.init() has not been awaited')
        return self._sessionmaker()
