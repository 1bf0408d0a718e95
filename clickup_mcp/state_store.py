"""
In-memory storage for pending OAuth authorization attempts.

Each entry maps a state value to its :class:`PendingAuth` record. Entries are
single use: :meth:`StateStore.take` removes the record it returns. Entries
older than the TTL are rejected on ``take`` even if the periodic sweep has not
removed them yet.

The same store keeps the one-time codes issued to MCP clients
(:class:`IssuedCode`), keyed by the code value.
"""

import logging
import threading
import time
from collections.abc import Callable
from operator import attrgetter
from typing import Generic, TypeVar

from .errors import DuplicateState
from .models import IssuedCode, PendingAuth

logger = logging.getLogger(__name__)

DEFAULT_STATE_TTL = 10 * 60

RecordT = TypeVar("RecordT", PendingAuth, IssuedCode)


class StateStore(Generic[RecordT]):
    """TTL-bounded, single-use store for pending authorization states."""

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_STATE_TTL,
        clock: Callable[[], float] = time.time,
        key: Callable[[RecordT], str] = attrgetter("state"),
        kind: str = "state",
    ):
        """
        Initialize the state store.

        Args:
            ttl_seconds: Lifetime of a pending state in seconds
            clock: Callable returning the current time in epoch seconds
            key: Returns the lookup key of a record
            kind: Record name used in log messages
        """
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.key = key
        self.kind = kind
        self._pending: dict[str, RecordT] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, state: object) -> bool:
        return state in self._pending

    def put(self, record: RecordT) -> None:
        """
        Insert a new pending record.

        Raises:
            DuplicateState: If a record with the same key is already pending
        """
        state = self.key(record)
        with self._lock:
            if state in self._pending:
                logger.error(f"Duplicate OAuth {self.kind} {state[:8]}... rejected")
                raise DuplicateState(state)
            self._pending[state] = record
        logger.debug(f"Stored pending {self.kind} {state[:8]}... ({len(self._pending)} pending)")

    def take(self, state: str) -> RecordT | None:
        """
        Atomically remove and return the record for ``state``.

        Returns:
            The pending record, or None if it is unknown, already consumed or expired
        """
        with self._lock:
            record = self._pending.pop(state, None)

        if record is None:
            logger.warning(f"Unknown or already consumed {self.kind} {state[:8]}...")
            return None

        if record.is_expired(self.clock(), self.ttl_seconds):
            logger.warning(f"Expired {self.kind} {state[:8]}...")
            return None

        return record

    def sweep(self, now: float | None = None) -> int:
        """
        Remove all expired records.

        Returns:
            Number of records removed
        """
        if now is None:
            now = self.clock()

        with self._lock:
            expired = [
                state
                for state, record in self._pending.items()
                if record.is_expired(now, self.ttl_seconds)
            ]
            for state in expired:
                del self._pending[state]

        if expired:
            logger.debug(f"Cleaned up {len(expired)} expired OAuth {self.kind}s")
        return len(expired)
