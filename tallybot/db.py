from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import get_settings


engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None

_ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}
_ASYNCPG_SSL_MODES = {"disable", "allow", "prefer", "require", "verify-ca", "verify-full"}


class DatabaseNotConfigured(RuntimeError):
    """Raised when a session is requested but no DATABASE_URL was given."""


def init_engine(url: Optional[str] = None) -> Optional[async_sessionmaker[AsyncSession]]:
    """(Re)bind the module-level engine. Without a URL the bot runs without a store."""
    global engine, SessionLocal
    url = normalize_database_url(url or get_settings().database_url)
    if not url:
        engine = None
        SessionLocal = None
        return None
    options: Dict[str, object] = {"future": True}
    if url.startswith("postgresql"):
        options["pool_pre_ping"] = True
    engine = create_async_engine(url, **options)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False)
    return SessionLocal


async def dispose_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    if not SessionLocal:
        raise DatabaseNotConfigured("Database not configured")
    async with SessionLocal() as session:
        yield session


def _asyncpg_query(query: Dict[str, str]) -> Dict[str, str]:
    # asyncpg spells libpq's sslmode as ssl and rejects unknown modes.
    sslmode = query.pop("sslmode", None)
    if sslmode and "ssl" not in query:
        query["ssl"] = sslmode
    if "ssl" in query:
        mode = query["ssl"].lower()
        query["ssl"] = mode if mode in _ASYNCPG_SSL_MODES else "disable"
    return query


def normalize_database_url(raw_url: Optional[str]) -> Optional[str]:
    """Point plain Postgres and SQLite URLs at their async drivers.

    ``postgres://`` and ``postgresql://`` become ``postgresql+asyncpg://`` with
    libpq SSL options translated; ``sqlite://`` becomes ``sqlite+aiosqlite://``.
    URLs that already name a driver are left alone apart from the SSL fix-up.
    """
    if not raw_url:
        return raw_url

    scheme, sep, rest = raw_url.partition("://")
    if not sep:
        return raw_url
    scheme = _ASYNC_DRIVERS.get(scheme, scheme)
    url = f"{scheme}://{rest}"
    if not scheme.startswith("postgresql+asyncpg"):
        return url

    parsed = urlparse(url)
    query = _asyncpg_query(dict(parse_qsl(parsed.query, keep_blank_values=True)))
    return urlunparse(parsed._replace(query=urlencode(query)))
