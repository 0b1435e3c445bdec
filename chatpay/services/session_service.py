"""
Access-token sessions for chat users.

Login itself happens elsewhere; this service only remembers the bearer
token handed over for a user and forgets it after it expires.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_SECONDS = 7 * 24 * 60 * 60


@dataclass
class _Session:
    access_token: str
    issued_at: float


class SessionManager:
    """In-memory user_id -> access token map with expiry."""

    def __init__(
        self,
        expiry_seconds: float = TOKEN_EXPIRY_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.expiry_seconds = expiry_seconds
        self._clock = clock
        self._sessions: Dict[int, _Session] = {}

    def get_token(self, user_id: int) -> Optional[str]:
        """Return the user's token, or None if absent or expired."""
        session = self._sessions.get(user_id)
        if session is None:
            return None
        if self._clock() - session.issued_at > self.expiry_seconds:
            logger.info(f"Session for user {user_id} expired")
            del self._sessions[user_id]
            return None
        return session.access_token

    def set_token(self, user_id: int, access_token: str):
        if not access_token:
            raise ValueError("access_token must not be empty")
        self._sessions[user_id] = _Session(access_token=access_token, issued_at=self._clock())
        logger.info(f"Session stored for user {user_id}")

    def clear(self, user_id: int):
        self._sessions.pop(user_id, None)

    def has_session(self, user_id: int) -> bool:
        return self.get_token(user_id) is not None
