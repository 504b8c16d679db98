# User value: This file wires routes to their collaborators so each request sees the same Redis, queues, and storage.
from functools import lru_cache

from fastapi import Depends

from services.ai.registry import ProviderRegistry
from services.queue import QueueManager
from services.redis_client import get_redis
from services.sessions import SessionStore
from services.settings import SettingsService
from services.storage import create_storage


def get_queue_manager(r=Depends(get_redis)) -> QueueManager:
    return QueueManager(r)


def get_session_store(r=Depends(get_redis)) -> SessionStore:
    return SessionStore(r)


@lru_cache(maxsize=1)
def get_storage():
    return create_storage()


def get_settings_service(r=Depends(get_redis)) -> SettingsService:
    return SettingsService(r)


def get_registry(settings_service: SettingsService = Depends(get_settings_service)) -> ProviderRegistry:
    return ProviderRegistry(settings_service)
