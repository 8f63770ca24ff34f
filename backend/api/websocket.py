# backend/api/websocket.py

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, WebSocket

from core.state import AppState

logger = logging.getLogger(__name__)

router = APIRouter()

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    WebSocket endpoint for live room delivery.

    Handshake:
    ==========
    The credential token travels with the handshake, either as the ``token``
    query parameter or an ``Authorization: Bearer <jwt>`` header. It is
    validated once:
        OK:     {"type": "connected", "user": {...}}
        Failed: {"type": "error", "code": "authentication_failed", ...}
                then close code 1008. Nothing is registered.

    Client -> Server Actions:
    -------------------------
    Subscribe:
        {"action": "subscribe", "room_id": "general"}
        Response: {"type": "subscribed", "room_id": "general"}

    Unsubscribe:
        {"action": "unsubscribe", "room_id": "general"}
        Response: {"type": "unsubscribed", "room_id": "general"}

    Send:
        {"action": "send", "room_id": "general", "text": "hello"}
        Response: {"type": "message_sent", "message": {...}}

    Server -> Client Events:
    ------------------------
    New message:
        {"type": "message_added", "room_id": "general", "message": {...}}

    Membership changes:
        {"type": "user_joined" | "user_left", "room_id": "...", "user": {...}}

    Error (connection stays open):
        {"type": "error", "code": "not_a_member" | "room_not_found" |
         "invalid_request" | "persistence_unavailable", "message": "...",
         "room_id": "..."}

    Forced disconnect:
        {"type": "error", "code": "slow_consumer_dropped", ...} then close
        code 1013. The client must reconnect, resubscribe and re-snapshot.

    Lifecycle:
    ==========
    1. Client connects with its token
    2. Token validated, session tracked by the connection manager
    3. Client subscribes to the rooms it is viewing
    4. Messages accepted for those rooms are pushed in creation order
    5. On disconnect every subscription is released from the registry
    """
    state: AppState = websocket.app.state.chat
    credential = token or websocket.headers.get("authorization")

    session = await state.connection_manager.connect(websocket, credential)
    if session is None:
        return

    await session.run()
