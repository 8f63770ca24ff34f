# backend/core/state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from core.config import Settings
from services.auth_service import AuthService
from services.chat_store import ChatStore
from services.connection_manager import ConnectionManager
from services.message_broker import MessageBroker
from services.room_registry import RoomTopicRegistry


@dataclass
class AppState:
    """Component graph owned by one app instance (``app.state.chat``)."""

    settings: Settings
    store: ChatStore
    auth: AuthService
    registry: RoomTopicRegistry
    broker: MessageBroker
    connection_manager: ConnectionManager
    app_start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def build_state(settings: Settings, store: ChatStore | None = None) -> AppState:
    store = store or ChatStore()
    if settings.SEED_SAMPLE_DATA and not store.rooms:
        store.create_default_data()

    auth = AuthService(settings, store)
    registry = RoomTopicRegistry(queue_size=settings.SUBSCRIBER_QUEUE_SIZE)
    broker = MessageBroker(registry)
    connection_manager = ConnectionManager(settings, registry, broker, store, auth)

    return AppState(
        settings=settings,
        store=store,
        auth=auth,
        registry=registry,
        broker=broker,
        connection_manager=connection_manager,
    )
