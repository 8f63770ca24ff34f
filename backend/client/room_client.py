# backend/client/room_client.py
"""Async room client: live stream over websockets, snapshots over HTTP.

Subscribing to a room is a three step sequence so that no message falls in
the gap between history and live delivery:

    1. send {"action": "subscribe"} and wait for "subscribed"
    2. GET /rooms/{room_id}/messages
    3. merge the snapshot into the ClientCacheReconciler

Events that arrive between 1 and 3 are buffered by the reconciler. When the
server drops the connection as a slow consumer (close code 1013) the client
reconnects, forgets its cached rooms and repeats the sequence for each room
it was viewing.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import quote

import httpx
import websockets
from websockets.exceptions import ConnectionClosed

from client.reconciler import ClientCacheReconciler
from core.errors import AuthenticationFailed, ChatError, SlowConsumerDropped, error_from_payload
from models.models import Message

logger = logging.getLogger(__name__)

CLOSE_TRY_AGAIN_LATER = 1013


def _close_code(exc: ConnectionClosed) -> Optional[int]:
    rcvd = getattr(exc, "rcvd", None)
    if rcvd is not None:
        return rcvd.code
    return getattr(exc, "code", None)


def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        body = response.json()
    except ValueError:
        body = {"detail": response.text}
    raise error_from_payload(body if isinstance(body, dict) else {"detail": str(body)})


class RoomClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        connect: Optional[Callable[[str], Any]] = None,
        cache: Optional[ClientCacheReconciler] = None,
        on_event: Optional[Callable[[Dict[str, Any]], None]] = None,
        reconnect_delay: float = 0.5,
        max_reconnects: int = 5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.ws_url = self.base_url.replace("http", "ws", 1) + "/ws?token=" + quote(token)
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(base_url=self.base_url)
        self._connect = connect or websockets.connect
        self.cache = cache or ClientCacheReconciler()
        self.on_event = on_event
        self.reconnect_delay = reconnect_delay
        self.max_reconnects = max_reconnects

        self.user: Optional[Dict[str, Any]] = None
        self.rooms: Set[str] = set()
        self.reconnects = 0

        self._ws = None
        self._listener: Optional[asyncio.Task] = None
        self._recovery: Optional[asyncio.Task] = None
        self._acks: Dict[str, asyncio.Future] = {}
        self._closing = False

    @property
    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> Dict[str, Any]:
        """Open the socket and complete the handshake. Raises the ChatError the server reported."""
        self._ws = await self._connect(self.ws_url)
        first = json.loads(await self._ws.recv())
        if first.get("type") != "connected":
            await self._ws.close()
            if first.get("type") == "error":
                raise error_from_payload(first)
            raise AuthenticationFailed(f"Unexpected handshake frame: {first.get('type')}")

        self.user = first["user"]
        self._listener = asyncio.create_task(self._listen(self._ws))
        logger.info("✓ Connected as %s", self.user.get("id"))
        return self.user

    async def close(self) -> None:
        self._closing = True
        if self._recovery is not None:
            self._recovery.cancel()
            await asyncio.gather(self._recovery, return_exceptions=True)
        await self._disconnect()
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Rooms
    # ------------------------------------------------------------------

    async def subscribe(self, room_id: str, timeout: float = 10.0) -> List[Message]:
        """Subscribe, then load the snapshot. Returns the merged local sequence."""
        ack = asyncio.get_running_loop().create_future()
        self._acks[room_id] = ack
        await self._ws.send(json.dumps({"action": "subscribe", "room_id": room_id}))
        try:
            await asyncio.wait_for(ack, timeout)
        finally:
            self._acks.pop(room_id, None)
        self.rooms.add(room_id)
        return await self.refresh(room_id)

    async def unsubscribe(self, room_id: str) -> None:
        self.rooms.discard(room_id)
        await self._ws.send(json.dumps({"action": "unsubscribe", "room_id": room_id}))
        self.cache.reset(room_id)

    async def refresh(self, room_id: str) -> List[Message]:
        response = await self._http.get(f"/rooms/{room_id}/messages", headers=self._auth_headers)
        _raise_for_error(response)
        snapshot = [Message.model_validate(item) for item in response.json()]
        return self.cache.load_snapshot(room_id, snapshot)

    async def send(self, room_id: str, text: str) -> Message:
        response = await self._http.post(
            f"/rooms/{room_id}/messages", json={"text": text}, headers=self._auth_headers
        )
        _raise_for_error(response)
        return Message.model_validate(response.json())

    def messages(self, room_id: str) -> List[Message]:
        return self.cache.messages(room_id)

    # ------------------------------------------------------------------
    # Live stream
    # ------------------------------------------------------------------

    def _dispatch(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("type")
        room_id = payload.get("room_id")

        if kind == "subscribed":
            ack = self._acks.get(room_id)
            if ack is not None and not ack.done():
                ack.set_result(room_id)
        elif kind == "error":
            error = error_from_payload(payload)
            ack = self._acks.get(room_id)
            if ack is not None and not ack.done():
                ack.set_exception(error)
            else:
                logger.warning("Server error %s: %s", error.code, error.message)
        else:
            self.cache.apply_event(payload)

        if self.on_event is not None:
            self.on_event(payload)

    async def _listen(self, ws) -> None:
        dropped = False
        try:
            async for raw in ws:
                payload = json.loads(raw)
                if payload.get("type") == "error" and payload.get("code") == SlowConsumerDropped.code:
                    dropped = True
                self._dispatch(payload)
        except ConnectionClosed as exc:
            dropped = dropped or _close_code(exc) == CLOSE_TRY_AGAIN_LATER
            logger.info("Connection closed (code=%s)", _close_code(exc))

        for ack in self._acks.values():
            if not ack.done():
                ack.set_exception(ChatError("Connection closed"))

        if dropped and not self._closing:
            self._recovery = asyncio.create_task(self._recover())

    async def _disconnect(self) -> None:
        """Stop the listener (unless it is the caller) and close the current socket."""
        listener, self._listener = self._listener, None
        if listener is not None and listener is not asyncio.current_task():
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    async def _recover(self) -> None:
        """Reconnect after a forced disconnect, then resubscribe and re-snapshot every room."""
        rooms = sorted(self.rooms)
        for attempt in range(1, self.max_reconnects + 1):
            await asyncio.sleep(self.reconnect_delay)
            await self._disconnect()
            try:
                await self.connect()
                for room_id in rooms:
                    self.cache.reset(room_id)
                    await self.subscribe(room_id)
                self.reconnects += 1
                logger.info("↻ Recovered %d rooms after slow-consumer drop", len(rooms))
                return
            except (OSError, ConnectionClosed, ChatError, asyncio.TimeoutError) as e:
                logger.warning("Reconnect attempt %d/%d failed: %s", attempt, self.max_reconnects, e)
        logger.error("Giving up after %d reconnect attempts", self.max_reconnects)
