"""Tests for the per-connection session: handshake, subscriptions, delivery and teardown."""
import asyncio
import json

import pytest

from core.errors import (
    AuthenticationFailed,
    InvalidRequest,
    NotAMember,
    PersistenceUnavailable,
    RoomNotFound,
    SlowConsumerDropped,
)
from helpers import DISCONNECT, FakeTransport, eventually, settle
from services.connection_session import (
    CLOSE_NORMAL,
    CLOSE_POLICY_VIOLATION,
    CLOSE_TRY_AGAIN_LATER,
    ConnectionSession,
    DeliveryFailed,
    SessionState,
)


@pytest.fixture
def make_session(chat):
    def _make(transport=None, **kwargs):
        options = {"max_attempts": 3, "retry_delay": 0, "close_timeout": 0.2}
        options.update(kwargs)
        return ConnectionSession(
            transport or FakeTransport(),
            registry=chat.registry,
            broker=chat.broker,
            store=chat.store,
            auth=chat.auth,
            **options,
        )
    return _make


async def connected(make_session, chat, user_id, **kwargs):
    session = make_session(**kwargs)
    await session.authenticate(chat.auth.issue_token(user_id))
    return session


@pytest.mark.asyncio
async def test_valid_handshake_sends_connected(make_session, chat):
    session = await connected(make_session, chat, "alice")

    assert session.state is SessionState.AUTHENTICATED
    [frame] = session.transport.sent
    assert frame["type"] == "connected"
    assert frame["user"]["id"] == "alice"
    assert "credential_hash" not in frame["user"]


@pytest.mark.asyncio
async def test_expired_token_closes_without_registering(make_session, chat):
    session = make_session()

    with pytest.raises(AuthenticationFailed):
        await session.authenticate(chat.auth.issue_token("alice", expires_in=-1))

    assert session.state is SessionState.CLOSED
    assert session.transport.close_code == CLOSE_POLICY_VIOLATION
    [error] = session.transport.of_type("error")
    assert error["code"] == "authentication_failed"
    assert chat.registry.subscription_count() == 0


@pytest.mark.asyncio
async def test_handshake_with_store_down_reports_and_closes(make_session, chat):
    token = chat.auth.issue_token("alice")
    chat.store.close()
    session = make_session()

    with pytest.raises(PersistenceUnavailable):
        await session.authenticate(token)

    assert session.state is SessionState.CLOSED
    assert session.transport.close_code == CLOSE_TRY_AGAIN_LATER
    [error] = session.transport.of_type("error")
    assert error["code"] == "persistence_unavailable"
    assert chat.registry.subscription_count() == 0

@pytest.mark.asyncio
async def test_requests_before_handshake_are_refused(make_session):
    session = make_session()
    with pytest.raises(AuthenticationFailed):
        await session.subscribe("general")


@pytest.mark.asyncio
async def test_subscribe_requires_membership(make_session, chat):
    session = await connected(make_session, chat, "carol")

    with pytest.raises(NotAMember) as exc_info:
        await session.subscribe("general")

    assert exc_info.value.room_id == "general"
    assert chat.registry.subscriber_count("general") == 0
    assert session.state is SessionState.AUTHENTICATED


@pytest.mark.asyncio
async def test_subscribe_to_unknown_room(make_session, chat):
    session = await connected(make_session, chat, "alice")
    with pytest.raises(RoomNotFound):
        await session.subscribe("nope")
    assert chat.registry.subscription_count() == 0


@pytest.mark.asyncio
async def test_public_room_can_be_watched_without_membership(make_session, chat):
    session = await connected(make_session, chat, "carol")

    await session.subscribe("lobby")

    assert session.state is SessionState.ACTIVE
    assert chat.registry.subscriber_count("lobby") == 1
    await session.close()


@pytest.mark.asyncio
async def test_subscribed_session_receives_messages_in_order(make_session, chat):
    session = await connected(make_session, chat, "bob")
    await session.subscribe("general")

    sent = [chat.store.create_message("general", "alice", f"m{n}") for n in range(3)]
    for message in sent:
        chat.broker.accept(message)

    await eventually(lambda: len(session.transport.of_type("message_added")) == 3)
    received = session.transport.of_type("message_added")
    assert [e["message"]["id"] for e in received] == [m.id for m in sent]
    assert all(e["room_id"] == "general" for e in received)

    # The ack precedes every delivered event
    types = [frame["type"] for frame in session.transport.sent]
    assert types.index("subscribed") < types.index("message_added")
    await session.close()


@pytest.mark.asyncio
async def test_subscribing_twice_keeps_one_subscription(make_session, chat):
    session = await connected(make_session, chat, "bob")
    await session.subscribe("general")
    await session.subscribe("general")

    assert chat.registry.subscriber_count("general") == 1

    chat.broker.accept(chat.store.create_message("general", "alice", "once"))
    await eventually(lambda: session.transport.of_type("message_added"))
    await settle()
    assert len(session.transport.of_type("message_added")) == 1
    await session.close()


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(make_session, chat):
    session = await connected(make_session, chat, "bob")
    await session.subscribe("general")

    assert await session.unsubscribe("general") is True
    assert await session.unsubscribe("general") is False

    chat.broker.accept(chat.store.create_message("general", "alice", "late"))
    await settle()
    assert session.transport.of_type("message_added") == []
    assert len(session.transport.of_type("unsubscribed")) == 2
    await session.close()


@pytest.mark.asyncio
async def test_close_releases_every_subscription(make_session, chat):
    closed = []
    session = await connected(make_session, chat, "alice", on_close=closed.append)
    await session.subscribe("general")
    await session.subscribe("random")
    assert chat.registry.subscription_count() == 2

    await session.close()
    await session.close()

    assert chat.registry.subscription_count() == 0
    assert session.state is SessionState.CLOSED
    assert session.transport.close_code == CLOSE_NORMAL
    assert closed == [session]


@pytest.mark.asyncio
async def test_run_loop_serves_requests_until_disconnect(make_session, chat):
    session = await connected(make_session, chat, "alice")
    transport = session.transport
    runner = asyncio.create_task(session.run())

    transport.inbox.put_nowait({"action": "subscribe", "room_id": "general"})
    transport.inbox.put_nowait({"action": "send", "room_id": "general", "text": "hello"})
    await eventually(lambda: transport.of_type("message_added") and transport.of_type("message_sent"))

    [sent] = transport.of_type("message_sent")
    [added] = transport.of_type("message_added")
    assert sent["message"]["id"] == added["message"]["id"]
    assert added["message"]["author_id"] == "alice"

    transport.inbox.put_nowait(DISCONNECT)
    await asyncio.wait_for(runner, 1)

    assert session.state is SessionState.CLOSED
    assert chat.registry.subscription_count() == 0


@pytest.mark.asyncio
async def test_request_errors_are_reported_and_connection_stays_open(make_session, chat):
    session = await connected(make_session, chat, "carol")
    transport = session.transport
    runner = asyncio.create_task(session.run())

    transport.inbox.put_nowait("{not json")
    transport.inbox.put_nowait({"action": "shout", "room_id": "general"})
    transport.inbox.put_nowait({"action": "send", "room_id": "general", "text": "hi"})
    transport.inbox.put_nowait({"action": "subscribe", "room_id": "nope"})
    transport.inbox.put_nowait({"action": "subscribe", "room_id": "lobby"})
    await eventually(lambda: transport.of_type("subscribed"))

    codes = [e["code"] for e in transport.of_type("error")]
    assert codes == ["invalid_request", "invalid_request", "not_a_member", "room_not_found"]
    assert transport.of_type("error")[2]["room_id"] == "general"
    assert session.state is SessionState.ACTIVE

    transport.inbox.put_nowait(DISCONNECT)
    await asyncio.wait_for(runner, 1)


@pytest.mark.asyncio
async def test_malformed_frame_payload(make_session, chat):
    session = await connected(make_session, chat, "alice")
    with pytest.raises(InvalidRequest):
        await session.handle(json.dumps({"action": "subscribe"}))


@pytest.mark.asyncio
async def test_slow_consumer_is_dropped_without_affecting_others(make_session, chat):
    capacity = chat.registry.queue_size
    slow = await connected(make_session, chat, "alice")
    fast = await connected(make_session, chat, "bob")
    await slow.subscribe("general")
    await fast.subscribe("general")

    # From here on every write to the slow client hangs
    slow.transport.gate = asyncio.Event()

    sent = []
    # One event in flight plus a full queue, then one more overflows
    for n in range(capacity + 2):
        message = chat.store.create_message("general", "carol", f"m{n}")
        sent.append(message)
        chat.broker.accept(message)
        await settle()

    await eventually(lambda: slow.closed)

    assert slow.transport.close_code == CLOSE_TRY_AGAIN_LATER
    assert isinstance(slow.close_reason, SlowConsumerDropped)
    assert chat.registry.dropped_count == 1
    assert chat.registry.subscriber_count("general") == 1
    assert chat.registry.handles_for(slow.id) == []

    await eventually(lambda: len(fast.transport.of_type("message_added")) == len(sent))
    assert [e["message"]["id"] for e in fast.transport.of_type("message_added")] == [m.id for m in sent]
    assert not fast.closed
    await fast.close()


@pytest.mark.asyncio
async def test_push_retries_transient_write_failures(make_session, chat):
    session = await connected(make_session, chat, "alice")
    session.transport.fail_sends = 2

    await session.push({"type": "ping"})

    assert session.transport.of_type("ping") == [{"type": "ping"}]


@pytest.mark.asyncio
async def test_push_gives_up_after_bounded_attempts(make_session, chat):
    session = await connected(make_session, chat, "alice")
    session.transport.fail_sends = 3

    with pytest.raises(DeliveryFailed):
        await session.push({"type": "ping"})


@pytest.mark.asyncio
async def test_persistent_delivery_failure_closes_session(make_session, chat):
    session = await connected(make_session, chat, "bob")
    await session.subscribe("general")
    session.transport.fail_sends = 100

    chat.broker.accept(chat.store.create_message("general", "alice", "lost"))

    await eventually(lambda: session.closed)
    assert chat.registry.subscription_count() == 0
