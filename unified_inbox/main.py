"""
FastAPI application factory and configuration.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from unified_inbox.core.config import Settings, get_settings
from unified_inbox.core.database import create_db_engine, init_db
from unified_inbox.core.logging import setup_logging, get_logger
from unified_inbox.api import conversations, health, messages, metrics, stats, webhook, ws
from unified_inbox.api.metrics import MetricsMiddleware, record_ingestion, set_startup_time
from unified_inbox.ingestion.fanout import SubscriberHub
from unified_inbox.ingestion.pipeline import IngestionService
from unified_inbox.storage.base import MessageStore
from unified_inbox.storage.memory import InMemoryMessageStore
from unified_inbox.storage.sql import SqlMessageStore


def build_store(settings: Settings) -> MessageStore:
    """Create the configured storage backend."""
    backend = settings.storage_backend.lower()
    if backend == "memory":
        return InMemoryMessageStore()
    if backend == "sql":
        engine = create_db_engine(settings.database_url, debug=settings.debug)
        init_db(engine)
        return SqlMessageStore(engine)
    raise ValueError(f"Unknown storage backend: {settings.storage_backend}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: Settings = app.state.settings
    logger = get_logger(__name__)
    logger.info("Starting application...")

    store = build_store(settings)
    hub = SubscriberHub(queue_size=settings.subscriber_queue_size)
    ingestion = IngestionService.from_settings(settings, store, hub)
    ingestion.add_listener(record_ingestion)

    app.state.store = store
    app.state.hub = hub
    app.state.ingestion = ingestion

    await ingestion.start()
    logger.info("Storage initialized", extra={"extra_data": {"backend": settings.storage_backend}})

    # Record startup time for metrics
    set_startup_time()

    yield

    logger.info("Shutting down application...")
    await ingestion.stop()
    hub.close()
    await store.close()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or get_settings()

    # Setup logging
    setup_logging(settings)
    logger = get_logger(__name__)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Ingests Telegram, Gmail, WhatsApp, Instagram and Twitter webhooks into a unified inbox",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_middleware(MetricsMiddleware)

    app.include_router(webhook.router)
    app.include_router(messages.router)
    app.include_router(conversations.router)
    app.include_router(stats.router)
    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(ws.router)

    logger.info(
        "Application created",
        extra={
            "extra_data": {
                "app_name": settings.app_name,
                "version": settings.app_version,
                "debug": settings.debug,
            }
        }
    )

    return app


# Create the application instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("unified_inbox.main:app", host=_settings.host, port=_settings.port)
