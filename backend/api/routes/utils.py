# backend/api/routes/utils.py

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, Request

from core.state import AppState
from models.models import User


async def get_state(request: Request) -> AppState:
    """The component graph of the app serving this request."""
    return request.app.state.chat


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
    state: AppState = Depends(get_state),
) -> User:
    """
    Resolve ``Authorization: Bearer <jwt>`` to a User.

    Raises:
        AuthenticationFailed (rendered as 401) when the header is missing,
        malformed, expired or names an unknown user
    """
    return state.auth.authenticate(authorization)
