"""
Handshake authentication.

Connections carry a signed JWT (HS256 by default) issued at login by the
identity side of the application. The token is verified once per
connection handshake and once per authenticated HTTP request:

- Optional "Bearer " prefix
- Signature and expiry checked by python-jose
- "sub" (or legacy "id") claim must name a known user

Any failure raises AuthenticationFailed; there is no anonymous fallback.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import ExpiredSignatureError, JWTError, jwt

from core.config import Settings
from core.errors import AuthenticationFailed
from core.logging import get_logger
from models.models import User
from services.chat_store import ChatStore

logger = get_logger(__name__)

BEARER_PREFIX = "bearer "


def strip_bearer(token: Optional[str]) -> str:
    if not token:
        return ""
    token = token.strip()
    if token.lower().startswith(BEARER_PREFIX):
        token = token[len(BEARER_PREFIX):].strip()
    return token


class AuthService:
    def __init__(self, settings: Settings, store: ChatStore) -> None:
        self.secret = settings.JWT_SECRET
        self.algorithm = settings.JWT_ALGORITHM
        self.ttl_seconds = settings.TOKEN_TTL_SECONDS
        self.store = store

    def issue_token(self, user_id: str, expires_in: Optional[int] = None) -> str:
        """Mint a signed token for ``user_id``. A negative ``expires_in`` yields an expired token."""
        now = datetime.now(timezone.utc)
        ttl = self.ttl_seconds if expires_in is None else expires_in
        claims: Dict[str, Any] = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=ttl)).timestamp()),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def decode(self, token: Optional[str]) -> Dict[str, Any]:
        raw = strip_bearer(token)
        if not raw:
            raise AuthenticationFailed("Missing token")
        try:
            return jwt.decode(raw, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationFailed("Token expired")
        except JWTError as e:
            logger.info("Rejected token: %s", e)
            raise AuthenticationFailed("Invalid token")

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a handshake token to a User or raise AuthenticationFailed."""
        claims = self.decode(token)
        user_id = claims.get("sub") or claims.get("id")
        if not user_id:
            raise AuthenticationFailed("Token has no subject")

        user = self.store.get_user(str(user_id))
        if user is None:
            raise AuthenticationFailed("Unknown user")
        return user
