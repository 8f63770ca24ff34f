"""Test helpers shared by the async test modules."""
import asyncio
import json
from datetime import datetime, timedelta, timezone

from fastapi import WebSocketDisconnect

from models.models import Message

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_message(message_id, seconds=0, room_id="general", author_id="alice", text=None):
    return Message(
        id=str(message_id),
        text=text or f"message {message_id}",
        author_id=author_id,
        room_id=room_id,
        created_at=BASE_TIME + timedelta(seconds=seconds),
    )


async def eventually(predicate, timeout=2.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or ``timeout`` seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


async def settle(rounds=5):
    """Give scheduled tasks a few turns of the loop."""
    for _ in range(rounds):
        await asyncio.sleep(0)


DISCONNECT = object()


class FakeTransport:
    """
    In-memory stand-in for a server-side websocket.

    - inbox: frames the "client" sends; put DISCONNECT to hang up
    - sent: every payload the session wrote
    - gate: when set to an unset asyncio.Event, writes block until it is set
    - fail_sends: number of upcoming writes that raise
    """

    def __init__(self):
        self.inbox = asyncio.Queue()
        self.sent = []
        self.close_code = None
        self.gate = None
        self.fail_sends = 0

    async def receive_text(self):
        item = await self.inbox.get()
        if item is DISCONNECT:
            raise WebSocketDisconnect(1000)
        return item if isinstance(item, str) else json.dumps(item)

    async def send_json(self, data):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_sends:
            self.fail_sends -= 1
            raise RuntimeError("write failed")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.close_code = code

    def of_type(self, kind):
        return [payload for payload in self.sent if payload.get("type") == kind]


def receive_until(ws, kind, limit=20):
    """Read frames from a TestClient websocket until one of type ``kind``; returns (match, skipped)."""
    skipped = []
    for _ in range(limit):
        payload = ws.receive_json()
        if payload.get("type") == kind:
            return payload, skipped
        skipped.append(payload)
    raise AssertionError(f"no {kind} frame in {limit} frames: {skipped}")
