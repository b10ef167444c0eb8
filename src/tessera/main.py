"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan manages startup/shutdown (database, Redis, seed data).
Middleware, CORS, exception handlers and routers all registered here.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from tessera import __version__
from tessera.api import api_router
from tessera.api.errors import register_exception_handlers
from tessera.config import settings

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: FastAPI lifespan replaces on_event("startup") / on_event("shutdown").
    Anything before `yield` runs at startup, after `yield` runs at shutdown.
    """
    logger.info(
        "tessera.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
    )

    # Redis carries the event bus. Without it reads still work, but every
    # state change answers 503 (publish fails) until it comes back.
    from tessera.events.bus import close_redis, init_redis
    try:
        await init_redis()
        logger.info("tessera.redis_connected", url=settings.redis_url)
    except (RedisError, OSError) as e:
        logger.warning("tessera.redis_unavailable", error=str(e))

    # Default roles (idempotent)
    from tessera.db.engine import async_session_factory
    from tessera.services.rbac_service import seed_default_roles
    try:
        async with async_session_factory() as session:
            await seed_default_roles(session)
    except SQLAlchemyError as e:
        logger.warning("tessera.seed_skipped", error=str(e))

    yield

    # Shutdown
    logger.info("tessera.shutdown")

    await close_redis()

    from tessera.db.engine import engine
    await engine.dispose()


def create_app() -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="Tessera",
        description="Identity & access control — Google login, rotating sessions, flat RBAC",
        version=__version__,
        lifespan=lifespan,
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: CORS → RateLimit → Security → RequestId → handler

    from tessera.middleware.rate_limit import RateLimitMiddleware
    from tessera.middleware.request_id import RequestIdMiddleware
    from tessera.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        default_rpm=settings.rate_limit_rpm,
        auth_rpm=settings.rate_limit_auth_rpm,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Mount API routes
    app.include_router(api_router)

    return app


# Default app instance (used by uvicorn: tessera.main:app)
app = create_app()
