from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from sqlalchemy.engine import Engine

from . import init_db
from .completion import ClassifierNotifier
from .config import PipelineSettings
from .db import SessionLocal, build_session_factory, engine as default_engine
from .infra.redis_client import build_redis
from .locks import RedisClientLock, StoreClientLock
from .middleware import TrafficMiddleware
from .pipeline import TrafficPipeline
from .routes import admin, health
from .store import TrafficStore

logger = logging.getLogger("sessionwatch.app")


def create_app(
    settings: Optional[PipelineSettings] = None,
    *,
    engine: Optional[Engine] = None,
    redis_url: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """
    Build the service app: traffic middleware, health and admin routers.

    Host applications add their own routes to the returned app. `engine`,
    `redis_url` and `http_client` override the environment-derived defaults
    (tests pass a SQLite engine and an httpx client on a mock transport).
    """
    settings = settings or PipelineSettings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine or default_engine)
        store = TrafficStore(build_session_factory(engine) if engine is not None else SessionLocal)

        app.state.redis = build_redis(redis_url)
        if app.state.redis is not None:
            lock = RedisClientLock(app.state.redis, ttl=settings.lock_ttl, wait=settings.lock_wait)
        else:
            logger.info("no Redis configured; using store leases for per-client locking")
            lock = StoreClientLock(store, ttl=settings.lock_ttl, wait=settings.lock_wait)

        # Shared classifier client (per-worker)
        owns_client = http_client is None
        client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.classifier_timeout),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
        )
        notifier = ClassifierNotifier(client, settings.classifier_url, settings.classifier_timeout)

        app.state.store = store
        app.state.pipeline = TrafficPipeline(settings, store, lock, notifier)

        try:
            yield
        finally:
            app.state.pipeline = None

            if owns_client:
                try:
                    await client.aclose()
                except Exception:
                    logger.exception("failed to close classifier client")

            if app.state.redis is not None:
                try:
                    await app.state.redis.aclose()
                except Exception:
                    logger.exception("failed to close redis")

    app = FastAPI(title="sessionwatch", lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(TrafficMiddleware, exclude_paths=("/health", "/admin"))

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(admin.router)

    return app


# uvicorn sessionwatch.app:app
app = create_app()
