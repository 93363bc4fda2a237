from __future__ import annotations

import logging
import os

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from .. import db
from ..config import get_settings
from ..services.sessions import RedisSessionStore


router = APIRouter()

logger = logging.getLogger(__name__)


async def _database_state() -> str:
    if db.SessionLocal is None:
        return "unconfigured"
    try:
        async with db.get_session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        return "unreachable"
    return "ok"


@router.get("/health")
async def health(request: Request):
    s = get_settings()
    bot = getattr(request.app.state, "bot", None)
    store = getattr(bot, "session_store", None)
    return {
        "status": "ok",
        "service": s.app_name,
        "env": s.environment,
        "database": await _database_state(),
        "sessions": "redis" if isinstance(store, RedisSessionStore) else "memory",
        "pid": os.getpid(),
    }
