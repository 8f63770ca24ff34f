"""Shared test fixtures: isolated settings, a small store and one app per test."""

import pytest
from fastapi.testclient import TestClient

from core.config import Settings
from core.state import build_state
from main import create_app
from services.chat_store import ChatStore


@pytest.fixture
def settings():
    """Settings with no demo data, small queues and no retry back-off."""
    settings = Settings()
    settings.JWT_SECRET = "test-secret"
    settings.JWT_ALGORITHM = "HS256"
    settings.TOKEN_TTL_SECONDS = 3600
    settings.SUBSCRIBER_QUEUE_SIZE = 4
    settings.DELIVERY_MAX_ATTEMPTS = 3
    settings.DELIVERY_RETRY_DELAY = 0
    settings.SESSION_CLOSE_TIMEOUT = 0.2
    settings.SEED_SAMPLE_DATA = False
    return settings


@pytest.fixture
def store():
    """
    alice: member of general and random
    bob:   member of general
    carol: no memberships
    lobby is public.
    """
    store = ChatStore()
    store.add_user("Alice", "alice@example.com", user_id="alice")
    store.add_user("Bob", "bob@example.com", user_id="bob")
    store.add_user("Carol", "carol@example.com", user_id="carol")
    store.add_group("Tech", "Technology", group_id="tech")
    store.add_group("Misc", "Everything else", group_id="misc")
    store.add_room("General", "tech", room_id="general")
    store.add_room("Random", "misc", room_id="random")
    store.add_room("Lobby", "misc", public=True, room_id="lobby")
    store.add_member("alice", "general")
    store.add_member("bob", "general")
    store.add_member("alice", "random")
    return store


@pytest.fixture
def chat(settings, store):
    """Component graph without the HTTP layer."""
    return build_state(settings, store)


@pytest.fixture
def app(settings, store):
    return create_app(settings, store)


@pytest.fixture
def state(app):
    return app.state.chat


@pytest.fixture
def client(app):
    # Entered as a context manager so HTTP calls and websockets share one loop
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def token(state):
    def _token(user_id, expires_in=None):
        return state.auth.issue_token(user_id, expires_in=expires_in)
    return _token


@pytest.fixture
def auth_headers(token):
    def _headers(user_id):
        return {"Authorization": f"Bearer {token(user_id)}"}
    return _headers

