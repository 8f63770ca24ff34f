# backend/core/errors.py
"""
Error taxonomy shared by the HTTP routes and the websocket sessions.

Every error carries:
    - code: stable identifier sent to clients ("not_a_member", ...)
    - status_code: HTTP status used when the error escapes a route
    - closes_connection: whether a websocket session must be closed after
      reporting it
"""

from __future__ import annotations

from typing import Optional


class ChatError(Exception):
    code = "internal_error"
    status_code = 500
    closes_connection = False
    retryable = False

    def __init__(self, message: str = "", room_id: Optional[str] = None) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.room_id = room_id

    def to_event(self) -> dict:
        """Render as an outbound ``error`` event."""
        return {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "room_id": self.room_id,
        }


class AuthenticationFailed(ChatError):
    """Bad, missing or expired handshake token. Never downgraded to anonymous."""

    code = "authentication_failed"
    status_code = 401
    closes_connection = True


class NotAMember(ChatError):
    code = "not_a_member"
    status_code = 403


class RoomNotFound(ChatError):
    code = "room_not_found"
    status_code = 404


class InvalidRequest(ChatError):
    code = "invalid_request"
    status_code = 400


class SlowConsumerDropped(ChatError):
    """The subscriber's delivery queue overflowed and it was removed from the registry."""

    code = "slow_consumer_dropped"
    status_code = 503
    closes_connection = True


class PersistenceUnavailable(ChatError):
    code = "persistence_unavailable"
    status_code = 503
    retryable = True


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        AuthenticationFailed,
        NotAMember,
        RoomNotFound,
        InvalidRequest,
        SlowConsumerDropped,
        PersistenceUnavailable,
    )
}


def error_from_payload(payload: dict) -> ChatError:
    """Rebuild a ChatError from an ``error`` event or an HTTP error body."""
    cls = ERRORS_BY_CODE.get(payload.get("code", ""), ChatError)
    return cls(payload.get("message") or payload.get("detail") or "", room_id=payload.get("room_id"))
