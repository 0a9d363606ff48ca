"""
Transfer session persistence: the record shape, the store contract the
session manager depends on, and an asyncio in-memory implementation with
per-token change notifications.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from app.db import InMemoryDB, db

logger = logging.getLogger(__name__)


@dataclass
class TransferSession:
    owner_id: str
    session_token: str
    credential: str
    expires_at: datetime
    created_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None


ChangeCallback = Callable[[TransferSession], None]


class Subscription:
    """Handle returned by ``subscribe``. ``unsubscribe`` may be called any number of times."""

    def __init__(self, store: "InMemorySessionStore", token: str, sub_id: int):
        self.token = token
        self._store = store
        self._sub_id = sub_id
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._remove_subscriber(self.token, self._sub_id)


class SessionStore(Protocol):
    """
    Contract for transfer session persistence.

    Implementations raise ``StoreUnavailable`` for transient infrastructure
    failures and must make ``insert_or_replace`` and ``update_consumed``
    atomic with respect to each other.
    """

    async def insert_or_replace(self, record: TransferSession) -> None:  # pragma: no cover - Protocol
        ...

    async def select_by_token(self, token: str) -> TransferSession | None:  # pragma: no cover - Protocol
        ...

    async def select_by_owner(self, owner_id: str) -> TransferSession | None:  # pragma: no cover - Protocol
        ...

    async def update_consumed(self, token: str, consumed_at: datetime) -> bool:  # pragma: no cover - Protocol
        """Marks the row consumed only if it still carries ``token`` and is unconsumed."""
        ...

    async def delete_expired(self, owner_id: str, now: datetime) -> int:  # pragma: no cover - Protocol
        ...

    async def delete_by_owner(self, owner_id: str) -> bool:  # pragma: no cover - Protocol
        ...

    def subscribe(self, token: str, on_change: ChangeCallback) -> Subscription:  # pragma: no cover - Protocol
        ...


class InMemorySessionStore:
    def __init__(self, database: InMemoryDB | None = None):
        self._db = database if database is not None else db
        self._lock = asyncio.Lock()
        self._subscribers: Dict[str, Dict[int, ChangeCallback]] = {}
        self._next_sub_id = 0

    async def insert_or_replace(self, record: TransferSession) -> None:
        # Upsert keyed by owner_id. The previous token leaves the index in the
        # same critical section, so it can never be consumed afterwards.
        async with self._lock:
            previous = self._db.transfer_sessions.get(record.owner_id)
            if previous is not None:
                self._db.transfer_tokens.pop(previous.session_token, None)
            stored = replace(record)
            self._db.transfer_sessions[record.owner_id] = stored
            self._db.transfer_tokens[record.session_token] = record.owner_id
            snapshot = replace(stored)
        self._notify(snapshot)

    async def select_by_token(self, token: str) -> TransferSession | None:
        async with self._lock:
            row = self._row_for_token(token)
            return replace(row) if row is not None else None

    async def select_by_owner(self, owner_id: str) -> TransferSession | None:
        async with self._lock:
            row = self._db.transfer_sessions.get(owner_id)
            return replace(row) if row is not None else None

    async def update_consumed(self, token: str, consumed_at: datetime) -> bool:
        # Yield first so concurrent consumers genuinely interleave on the lock
        await asyncio.sleep(0)
        async with self._lock:
            row = self._row_for_token(token)
            if row is None or row.consumed:
                return False
            row.consumed = True
            row.consumed_at = consumed_at
            snapshot = replace(row)
        self._notify(snapshot)
        return True

    async def delete_expired(self, owner_id: str, now: datetime) -> int:
        async with self._lock:
            row = self._db.transfer_sessions.get(owner_id)
            if row is None or not row.expires_at < now:
                return 0
            del self._db.transfer_sessions[owner_id]
            self._db.transfer_tokens.pop(row.session_token, None)
            return 1

    async def delete_by_owner(self, owner_id: str) -> bool:
        async with self._lock:
            row = self._db.transfer_sessions.pop(owner_id, None)
            if row is None:
                return False
            self._db.transfer_tokens.pop(row.session_token, None)
            return True

    def subscribe(self, token: str, on_change: ChangeCallback) -> Subscription:
        self._next_sub_id += 1
        sub_id = self._next_sub_id
        self._subscribers.setdefault(token, {})[sub_id] = on_change
        return Subscription(self, token, sub_id)

    def subscriber_count(self, token: str) -> int:
        return len(self._subscribers.get(token, {}))

    def _remove_subscriber(self, token: str, sub_id: int) -> None:
        callbacks = self._subscribers.get(token)
        if not callbacks:
            return
        callbacks.pop(sub_id, None)
        if not callbacks:
            del self._subscribers[token]

    def _row_for_token(self, token: str) -> TransferSession | None:
        owner_id = self._db.transfer_tokens.get(token)
        if owner_id is None:
            return None
        row = self._db.transfer_sessions.get(owner_id)
        if row is None or row.session_token != token:
            return None
        return row

    def _notify(self, row: TransferSession) -> None:
        # Copy: callbacks commonly unsubscribe themselves
        for callback in list(self._subscribers.get(row.session_token, {}).values()):
            try:
                callback(replace(row))
            except Exception:
                logger.exception(f"Change listener failed for session {row.session_token[:8]}")
