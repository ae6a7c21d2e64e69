"""
FastAPI dependencies resolving the components built at startup.
"""
from fastapi import Request

from unified_inbox.core.config import Settings
from unified_inbox.ingestion.fanout import SubscriberHub
from unified_inbox.ingestion.pipeline import IngestionService
from unified_inbox.storage.base import MessageStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_ingestion_service(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_hub(request: Request) -> SubscriberHub:
    return request.app.state.hub
