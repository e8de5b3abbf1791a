"""
Bearer-token sessions.

Tokens map to user ids in a process-local table. They never expire on their own:
a session lives until logout or until the process restarts.
"""
import logging
import secrets
from typing import Dict, Optional

from errors import AuthError

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Pull the token out of an ``Authorization: Bearer <token>`` header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SessionTable:
    def __init__(self):
        self._sessions: Dict[str, str] = {}

    def create(self, user_id: str) -> str:
        token = secrets.token_urlsafe(32)
        self._sessions[token] = user_id
        return token

    def resolve(self, token: Optional[str]) -> str:
        if not token:
            raise AuthError("Not authenticated")
        user_id = self._sessions.get(token)
        if user_id is None:
            raise AuthError("Invalid session")
        return user_id

    def revoke(self, token: Optional[str]) -> Optional[str]:
        if not token:
            return None
        return self._sessions.pop(token, None)

    def __len__(self):
        return len(self._sessions)
