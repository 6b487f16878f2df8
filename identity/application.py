"""Application factory wiring configuration to the identity service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from fastapi import FastAPI

from .api import Lifespan, create_app
from .codes import CodeStore, MemoryCodeStore, RedisCodeStore, VerificationCodeGate
from .config import Settings, load_settings
from .database import Database
from .mail import Mailer, SMTPMailer
from .service import IdentityService

logger = logging.getLogger("identity.application")


def build_code_store(settings: Settings) -> CodeStore:
    if settings.redis_url:
        return RedisCodeStore.from_url(settings.redis_url)
    logger.warning(
        "No Redis URL configured; verification codes are kept in process memory and"
        " are lost on restart."
    )
    return MemoryCodeStore()


def build_service(
    settings: Settings,
    *,
    code_store: CodeStore,
    database: Optional[Database] = None,
    mailer: Optional[Mailer] = None,
) -> IdentityService:
    db = database or Database(settings.database_path)
    db.initialize()

    gate = VerificationCodeGate(code_store, ttl=timedelta(seconds=settings.code_ttl_seconds))
    return IdentityService(
        db,
        gate,
        mailer=mailer or SMTPMailer(settings.smtp),
        logger=logging.getLogger("identity.service"),
    )


def closing_lifespan(store: CodeStore) -> Lifespan:
    """Return a lifespan that closes ``store`` when the application stops."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            await store.close()
            logger.info("Closed verification code store")

    return lifespan


def create_application(
    *,
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    code_store: Optional[CodeStore] = None,
    mailer: Optional[Mailer] = None,
) -> FastAPI:
    """Create the ASGI application from configuration.

    A code store built here from ``settings`` is closed on shutdown. A store
    passed in by the caller stays open and remains the caller's to close.
    """

    resolved = settings or load_settings()
    lifespan: Optional[Lifespan] = None
    if code_store is None:
        code_store = build_code_store(resolved)
        lifespan = closing_lifespan(code_store)

    service = build_service(resolved, code_store=code_store, database=database, mailer=mailer)
    app = create_app(service=service, lifespan=lifespan)
    app.state.settings = resolved
    return app


__all__ = ["build_code_store", "build_service", "closing_lifespan", "create_application"]
