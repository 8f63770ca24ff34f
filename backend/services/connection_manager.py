# backend/services/connection_manager.py

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional
from fastapi import WebSocket
import logging

from core.config import Settings
from core.errors import ChatError
from services.auth_service import AuthService
from services.chat_store import ChatStore
from services.connection_session import ConnectionSession, Transport
from services.message_broker import MessageBroker
from services.room_registry import RoomTopicRegistry

logger = logging.getLogger(__name__)

# ============================================================================
# WEBSOCKET CONNECTION MANAGER
# ============================================================================

class ConnectionManager:
    """
    Builds and tracks live ConnectionSessions.

    Room membership of connections lives in the RoomTopicRegistry; this
    class only knows which authenticated sessions exist, for the health and
    metrics endpoints and for closing everything on shutdown.

    Data Structures:
        sessions: session_id -> ConnectionSession (authenticated only)

    A session whose handshake fails is never added here.
    """

    def __init__(
        self,
        settings: Settings,
        registry: RoomTopicRegistry,
        broker: MessageBroker,
        store: ChatStore,
        auth: AuthService,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.broker = broker
        self.store = store
        self.auth = auth
        self.sessions: Dict[str, ConnectionSession] = {}

    def new_session(self, transport: Transport) -> ConnectionSession:
        return ConnectionSession(
            transport,
            registry=self.registry,
            broker=self.broker,
            store=self.store,
            auth=self.auth,
            max_attempts=self.settings.DELIVERY_MAX_ATTEMPTS,
            retry_delay=self.settings.DELIVERY_RETRY_DELAY,
            close_timeout=self.settings.SESSION_CLOSE_TIMEOUT,
            on_close=self.disconnect,
        )

    async def connect(self, websocket: WebSocket, token: Optional[str]) -> Optional[ConnectionSession]:
        """
        Accept a WebSocket connection and authenticate its handshake token.

        Returns:
            The authenticated session, or None when the handshake failed
            (the client has already been told and the socket closed).
        """
        await websocket.accept()

        session = self.new_session(websocket)
        try:
            await session.authenticate(token)
        except ChatError:
            return None

        self.sessions[session.id] = session
        logger.info("✓ User %s connected. Total: %d", session.user.id, len(self.sessions))
        return session

    def disconnect(self, session: ConnectionSession) -> None:
        if self.sessions.pop(session.id, None) is not None:
            user_id = session.user.id if session.user else "unknown"
            logger.info("✗ User %s disconnected. Total: %d", user_id, len(self.sessions))

    async def close_all(self) -> None:
        sessions = list(self.sessions.values())
        if sessions:
            await asyncio.gather(*[s.close() for s in sessions], return_exceptions=True)

    def connection_count(self) -> int:
        return len(self.sessions)

    def sessions_for_user(self, user_id: str) -> List[ConnectionSession]:
        return [s for s in self.sessions.values() if s.user and s.user.id == user_id]
