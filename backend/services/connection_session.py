# backend/services/connection_session.py

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Annotated, Any, Callable, Dict, Optional, Protocol

from fastapi import WebSocketDisconnect
from pydantic import Field, TypeAdapter, ValidationError

from core.errors import AuthenticationFailed, ChatError, InvalidRequest, NotAMember, RoomNotFound, SlowConsumerDropped
from models.models import ClientRequest, Message, SendRequest, SubscribeRequest, UnsubscribeRequest, User
from services.auth_service import AuthService
from services.chat_store import ChatStore
from services.message_broker import MessageBroker
from services.messaging import post_message
from services.room_registry import RoomTopicRegistry, SubscriptionHandle

logger = logging.getLogger(__name__)

# Websocket close codes
CLOSE_NORMAL = 1000
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013

REQUEST_ADAPTER = TypeAdapter(Annotated[ClientRequest, Field(discriminator="action")])


class Transport(Protocol):
    """The subset of ``fastapi.WebSocket`` a session talks to."""

    async def receive_text(self) -> str: ...

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None: ...


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    ACTIVE = "active"
    CLOSED = "closed"


class DeliveryFailed(Exception):
    """A push to the transport kept failing after the bounded retries."""


def close_code_for(reason: Optional[ChatError]) -> int:
    if isinstance(reason, AuthenticationFailed):
        return CLOSE_POLICY_VIOLATION
    if isinstance(reason, SlowConsumerDropped) or (reason is not None and reason.retryable):
        return CLOSE_TRY_AGAIN_LATER
    return CLOSE_NORMAL


# ============================================================================
# CONNECTION SESSION
# ============================================================================

class ConnectionSession:
    """
    One live client connection.

    Lifecycle:
        CONNECTING --authenticate()--> AUTHENTICATED --subscribe()--> ACTIVE
        any state --close()--> CLOSED

    Each room subscription owns a bounded channel in the registry and a
    delivery task that drains it into the transport. Pushes go through
    ``push`` which serialises writes and retries a failed write a bounded
    number of times; persistent failure closes the session.

    ``close`` always unsubscribes every handle from the registry before
    anything else, whatever state the session is in.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        registry: RoomTopicRegistry,
        broker: MessageBroker,
        store: ChatStore,
        auth: AuthService,
        max_attempts: int = 3,
        retry_delay: float = 0.05,
        close_timeout: float = 1.0,
        on_close: Optional[Callable[["ConnectionSession"], None]] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.transport = transport
        self.registry = registry
        self.broker = broker
        self.store = store
        self.auth = auth
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.close_timeout = close_timeout
        self.on_close = on_close

        self.state = SessionState.CONNECTING
        self.user: Optional[User] = None
        self.subscriptions: Dict[str, SubscriptionHandle] = {}
        self.close_reason: Optional[ChatError] = None

        self._pumps: Dict[str, asyncio.Task] = {}
        self._reader: Optional[asyncio.Task] = None
        self._drop_task: Optional[asyncio.Task] = None
        self._send_lock = asyncio.Lock()
        self._closing = False

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def _require_authenticated(self) -> User:
        if self.user is None or self.state not in (SessionState.AUTHENTICATED, SessionState.ACTIVE):
            raise AuthenticationFailed("Session is not authenticated")
        return self.user

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def authenticate(self, token: Optional[str]) -> User:
        """
        Validate the handshake token once.

        On failure (a rejected token, or the store being unavailable) the
        error is reported to the client, the transport is closed and the
        ChatError is re-raised. Nothing is registered.
        """
        if self.state is not SessionState.CONNECTING:
            raise InvalidRequest("Session already authenticated")
        try:
            user = self.auth.authenticate(token)
        except ChatError as e:
            logger.info("✗ Handshake rejected for session %s: %s", self.id, e.message)
            await self.close(e)
            raise

        self.user = user
        self.state = SessionState.AUTHENTICATED
        await self.push({"type": "connected", "user": user.model_dump(mode="json")})
        return user

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def subscribe(self, room_id: str) -> SubscriptionHandle:
        user = self._require_authenticated()
        if self.store.get_room(room_id) is None:
            raise RoomNotFound(f"Room {room_id} not found", room_id=room_id)
        if not self.store.can_view(user.id, room_id):
            raise NotAMember(f"Not a member of room {room_id}", room_id=room_id)

        # Replaces (and closes) any previous subscription of ours to this room
        channel = self.registry.new_channel(on_close=self._channel_closed)
        handle = self.registry.subscribe(room_id, channel, owner=self.id)
        previous = self._pumps.pop(room_id, None)
        self.subscriptions[room_id] = handle
        self.state = SessionState.ACTIVE

        await self.push({"type": "subscribed", "room_id": room_id})
        self._pumps[room_id] = asyncio.create_task(
            self._pump(handle, previous), name=f"deliver-{self.id}-{room_id}"
        )
        return handle

    async def unsubscribe(self, room_id: str) -> bool:
        self._require_authenticated()
        handle = self.subscriptions.pop(room_id, None)
        removed = self.registry.unsubscribe(handle)
        await self.push({"type": "unsubscribed", "room_id": room_id})
        return removed

    async def send(self, room_id: str, text: str) -> Message:
        user = self._require_authenticated()
        message = post_message(self.store, self.broker, user, room_id, text)
        await self.push({"type": "message_sent", "message": message.model_dump(mode="json")})
        return message

    async def handle(self, raw: str) -> None:
        """Parse and dispatch one inbound frame."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            raise InvalidRequest("Invalid JSON")

        try:
            request = REQUEST_ADAPTER.validate_python(payload)
        except ValidationError:
            action = payload.get("action") if isinstance(payload, dict) else None
            room_id = payload.get("room_id") if isinstance(payload, dict) else None
            raise InvalidRequest(f"Unknown or malformed action: {action}", room_id=room_id)

        logger.debug("Websocket input: session=%s request=%s", self.id, request)

        if isinstance(request, SubscribeRequest):
            await self.subscribe(request.room_id)
        elif isinstance(request, UnsubscribeRequest):
            await self.unsubscribe(request.room_id)
        elif isinstance(request, SendRequest):
            await self.send(request.room_id, request.text)

    async def run(self) -> None:
        """
        Serve inbound requests until the transport disconnects.

        Request errors are reported back and the session keeps going; errors
        that close the connection end the loop.
        """
        self._reader = asyncio.current_task()
        try:
            while not self.closed:
                raw = await self.transport.receive_text()
                try:
                    await self.handle(raw)
                except ChatError as e:
                    if e.closes_connection:
                        await self.close(e)
                        break
                    await self.push(e.to_event())
        except WebSocketDisconnect:
            logger.info("Transport disconnected for session %s", self.id)
        except asyncio.CancelledError:
            if not self._closing:
                raise
        except Exception as e:
            if not self._closing:
                logger.error("WebSocket error in session %s: %s", self.id, e)
        finally:
            await self.close()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def push(self, payload: Dict[str, Any]) -> None:
        """Write one event, retrying failed writes up to ``max_attempts`` times."""
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                async with self._send_lock:
                    await self.transport.send_json(payload)
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    "Send to session %s failed (attempt %d/%d): %s", self.id, attempt, self.max_attempts, e
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.retry_delay)
        raise DeliveryFailed(str(last_error))

    async def _pump(self, handle: SubscriptionHandle, previous: Optional[asyncio.Task] = None) -> None:
        if previous is not None:
            # The replaced subscription finishes draining first
            await asyncio.gather(previous, return_exceptions=True)
        try:
            async for event in handle.channel:
                await self.push(event.model_dump(mode="json"))
        except DeliveryFailed:
            logger.warning("✗ Giving up on session %s after repeated write failures", self.id)
            await self.close()
            return
        finally:
            if self._pumps.get(handle.room_id) is asyncio.current_task():
                del self._pumps[handle.room_id]

    async def _send_final(self, payload: Dict[str, Any]) -> None:
        async with self._send_lock:
            await self.transport.send_json(payload)

    def _channel_closed(self, reason: Optional[Exception]) -> None:
        # Called synchronously by the registry when it drops this subscriber
        if isinstance(reason, SlowConsumerDropped) and not self._closing:
            self._drop_task = asyncio.create_task(self.close(reason))

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close(self, reason: Optional[ChatError] = None) -> None:
        if self._closing or self.closed:
            return
        self._closing = True
        self.close_reason = reason
        try:
            for handle in list(self.subscriptions.values()):
                self.registry.unsubscribe(handle)
            self.subscriptions.clear()

            current = asyncio.current_task()
            tasks = [t for t in self._pumps.values() if t is not current]
            self._pumps.clear()
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

            if reason is not None:
                try:
                    await asyncio.wait_for(self._send_final(reason.to_event()), self.close_timeout)
                except Exception as e:
                    logger.debug("Could not report %s to session %s: %s", reason.code, self.id, e)
            try:
                await asyncio.wait_for(self.transport.close(code=close_code_for(reason)), self.close_timeout)
            except Exception as e:
                logger.debug("Transport close for session %s failed: %s", self.id, e)

            if self._reader is not None and self._reader is not current:
                self._reader.cancel()
        finally:
            self.state = SessionState.CLOSED
            user_id = self.user.id if self.user else "unauthenticated"
            logger.info("✗ Session %s (%s) closed%s", self.id, user_id, f": {reason.code}" if reason else "")
            if self.on_close is not None:
                self.on_close(self)
