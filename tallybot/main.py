from __future__ import annotations

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import Settings, get_settings
from .db import dispose_engine, init_engine
from .observability import configure_logging, init_sentry
from .ratelimit import limiter
from .routes import health, inventory, telegram
from .services.bot import build_bot
from .startup import validate_settings


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("X-Frame-Options", "DENY")
        # Stock figures change with every batch.
        if request.url.path.startswith("/v1/inventory"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await dispose_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    s = settings or get_settings()
    configure_logging(json_logs=s.log_json, level=s.log_level, redact=[s.telegram_bot_token])
    init_sentry(s)
    validate_settings(s)

    init_engine(s.database_url)
    app = FastAPI(title=s.app_name, lifespan=lifespan)
    app.state.bot = build_bot(s)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=s.cors_allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(GZipMiddleware, minimum_size=1024)

    for module in (health, telegram, inventory):
        app.include_router(module.router, prefix="/v1")

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    Instrumentator(excluded_handlers=["/v1/health", "/metrics"]).instrument(app).expose(
        app, include_in_schema=False
    )

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", "8000"))
    uvicorn.run("tallybot.main:app", host="0.0.0.0", port=port, reload=False)
