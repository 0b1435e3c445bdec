"""Shared in-memory store of active transfer flows, one per user."""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chatpay.core.flows import FlowState

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    state: FlowState
    touched_at: float


class FlowStore:
    """
    User-keyed table holding at most one active flow per user.

    States are copied on the way in and on the way out, so a handler's
    working copy never aliases the stored one. Entries idle longer than
    ``timeout_seconds`` are treated as absent.

    A single instance is shared by every handler (kept in ``bot_data``).
    """

    def __init__(self, timeout_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            timeout_seconds: Idle time after which a flow is dropped
            clock: Monotonic time source (injectable for tests)
        """
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._entries: Dict[int, _Entry] = {}
        self._locks: Dict[int, asyncio.Lock] = {}

    def get(self, user_id: int) -> Optional[FlowState]:
        """Return a copy of the user's flow, or None when the user is not in a flow."""
        entry = self._entries.get(user_id)
        if entry is None:
            return None
        if self._is_expired(entry):
            logger.info(f"Flow for user {user_id} expired at step {entry.state.step.value}")
            del self._entries[user_id]
            return None
        return copy.deepcopy(entry.state)

    def set(self, user_id: int, state: FlowState):
        """Replace the user's flow with a copy of ``state``."""
        if state.user_id != user_id:
            raise ValueError(f"State belongs to user {state.user_id}, not {user_id}")
        self._entries[user_id] = _Entry(state=copy.deepcopy(state), touched_at=self._clock())

    def clear(self, user_id: int):
        self._entries.pop(user_id, None)

    def has_flow(self, user_id: int) -> bool:
        return self.get(user_id) is not None

    def lock(self, user_id: int) -> asyncio.Lock:
        """
        Per-user lock. Holding it while handling one message serializes that
        user's messages without blocking other users.
        """
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def purge_expired(self) -> int:
        """
        Drop idle flows and unused locks.

        Returns:
            Number of flows removed
        """
        expired = [uid for uid, entry in self._entries.items() if self._is_expired(entry)]
        for user_id in expired:
            del self._entries[user_id]

        idle_locks = [
            uid for uid, lock in self._locks.items()
            if uid not in self._entries and not lock.locked()
        ]
        for user_id in idle_locks:
            del self._locks[user_id]

        if expired:
            logger.info(f"Purged {len(expired)} idle flow(s)")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def _is_expired(self, entry: _Entry) -> bool:
        return self._clock() - entry.touched_at > self.timeout_seconds
