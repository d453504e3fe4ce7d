"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from mailwatch.classifier import GeminiClassifier
from mailwatch.config import Settings
from mailwatch.db import Database
from mailwatch.listener import MailboxListener
from mailwatch.processor import EmailProcessor
from mailwatch.registry import ListenerRegistry
from mailwatch.sms import SmsGateway
from mailwatch.store import EmailStore, SettingsStore
from mailwatch.vault import CredentialVault

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create the database and wire the services. Shutdown: stop listeners, dispose."""
    settings: Settings = app.state.settings

    db = Database(settings.database)
    await db.create_all()
    app.state.db = db
    logger.info("database_ready", dialect=db.dialect)

    vault = CredentialVault(settings.vault.passphrase.get_secret_value())
    settings_store = SettingsStore(db, vault)
    email_store = EmailStore(db)
    gateway = SmsGateway(settings.sms, settings_store)
    await settings_store.migrate_secrets()

    classifier = GeminiClassifier(settings.gemini)
    processor = EmailProcessor(classifier, gateway, email_store)

    app.state.settings_store = settings_store
    app.state.classifier = classifier
    app.state.email_store = email_store
    app.state.gateway = gateway
    app.state.registry = ListenerRegistry(
        lambda user_id: MailboxListener(
            user_id,
            processor,
            settings_store=settings_store,
            config=settings.listener,
            imap_config=settings.imap,
        )
    )
    logger.info("services_ready")
    yield
    await app.state.registry.stop_all()
    await db.close()
    logger.info("shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Mailwatch",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    from mailwatch.api.routers.emails import router as emails_router
    from mailwatch.api.routers.listeners import router as listeners_router
    from mailwatch.api.routers.settings import router as settings_router
    from mailwatch.api.routers.sms import router as sms_router

    app.include_router(settings_router)
    app.include_router(listeners_router)
    app.include_router(emails_router)
    app.include_router(sms_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "mailwatch"}

    return app
