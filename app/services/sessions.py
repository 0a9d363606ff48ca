# Transfer session management (creation, supersession, expiry,
# single-use consumption, and cleanup).

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.config import settings
from app.core.errors import Expired, NoActiveSession, NotFound, StoreUnavailable
from app.core.security import new_transfer_token
from app.services.auth_service import IdentityProvider
from app.services.logger import log_event
from app.services.store import SessionStore, TransferSession

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

# Failures a store call may surface that are worth another attempt
RETRYABLE = (StoreUnavailable, ConnectionError, TimeoutError)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IssuedSession:
    owner_id: str
    session_token: str
    expires_at: datetime


@dataclass
class RedeemedCredential:
    owner_id: str
    credential: str


class TransferSessionManager:
    def __init__(
        self,
        store: SessionStore,
        identity: Optional[IdentityProvider] = None,
        ttl_seconds: float | None = None,
        clock: Clock | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
    ):
        self._store = store
        self._identity = identity
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.TRANSFER_SESSION_TTL_SECONDS
        self._clock = clock or utc_now
        self._max_attempts = max(1, max_attempts if max_attempts is not None else settings.STORE_MAX_ATTEMPTS)
        self._backoff_ms = backoff_ms if backoff_ms is not None else settings.STORE_RETRY_BACKOFF_MS

    def _now(self) -> datetime:
        return self._clock()

    async def _with_retry(self, op: str, call: Callable[[], Awaitable[T]]) -> T:
        """
        Runs a store call with a bounded retry. This loop is the transactional
        boundary for transient failures: every attempt is a complete write or read.
        """
        last_error: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return await call()
            except RETRYABLE as e:
                last_error = e
                logger.warning(f"Store call {op} failed (attempt {attempt}/{self._max_attempts}): {e}")
                if attempt < self._max_attempts:
                    await asyncio.sleep(self._backoff_ms / 1000)
        raise StoreUnavailable(f"{op} failed after {self._max_attempts} attempts") from last_error

    async def create(self, owner_id: str | None = None) -> IssuedSession:
        """
        Issues a fresh transfer session for the signed-in owner, replacing
        any previous one so older codes stop working immediately.
        """
        started = time.monotonic()
        current = await self._identity.get_current_session() if self._identity else None
        if current is None:
            logger.warning("Transfer session rejected: no active identity session")
            raise NoActiveSession()
        if owner_id is not None and owner_id != current.user_id:
            logger.warning(f"Transfer session rejected: owner={owner_id} is not the signed-in user")
            raise NoActiveSession("Signed-in account does not match the requested owner")

        now = self._now()
        record = TransferSession(
            owner_id=current.user_id,
            session_token=new_transfer_token(),
            credential=current.refresh_token,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            created_at=now,
        )

        try:
            await self._with_retry("insert_or_replace", lambda: self._store.insert_or_replace(record))
        except StoreUnavailable:
            log_event("create", "", "store_unavailable", _elapsed_ms(started))
            raise

        logger.info(f"Transfer session created: owner={record.owner_id}, token={record.session_token[:8]}")
        log_event("create", record.session_token[:8], "ok", _elapsed_ms(started))
        return IssuedSession(
            owner_id=record.owner_id,
            session_token=record.session_token,
            expires_at=record.expires_at,
        )

    async def refresh(self, owner_id: str | None = None) -> IssuedSession:
        # Same as create, called by the display countdown before expiry
        return await self.create(owner_id)

    async def validate_and_consume(self, session_token: str) -> RedeemedCredential:
        """
        Redeems a scanned token exactly once.

        Unknown, superseded and already consumed tokens raise NotFound.
        Expired tokens raise Expired and the row stays unconsumed.
        """
        started = time.monotonic()
        tag = session_token[:8]

        row = await self._with_retry("select_by_token", lambda: self._store.select_by_token(session_token))
        if row is None or row.consumed:
            logger.warning(f"Consume failed: token={tag} not found or already used")
            log_event("consume", tag, "not_found", _elapsed_ms(started))
            raise NotFound()

        now = self._now()
        if now > row.expires_at:
            logger.info(f"Consume failed: token={tag} expired")
            log_event("consume", tag, "expired", _elapsed_ms(started))
            raise Expired()

        # Conditional update; the loser of a race sees False. Not retried: a
        # retry after an ambiguous failure resolves as NotFound.
        try:
            consumed = await self._store.update_consumed(session_token, now)
        except RETRYABLE as e:
            log_event("consume", tag, "store_unavailable", _elapsed_ms(started))
            raise StoreUnavailable(f"update_consumed failed: {e}") from e
        if not consumed:
            logger.warning(f"Consume failed: token={tag} lost the race or was superseded")
            log_event("consume", tag, "not_found", _elapsed_ms(started))
            raise NotFound()

        logger.info(f"Transfer session consumed: owner={row.owner_id}, token={tag}")
        log_event("consume", tag, "ok", _elapsed_ms(started))
        return RedeemedCredential(owner_id=row.owner_id, credential=row.credential)

    async def cleanup_expired(self, owner_id: str) -> int:
        """Best-effort: failures are logged, never raised."""
        try:
            deleted = await self._store.delete_expired(owner_id, self._now())
        except RETRYABLE as e:
            logger.warning(f"Cleanup failed for owner={owner_id}: {e}")
            log_event("cleanup", owner_id, "store_unavailable")
            return 0
        except Exception:
            logger.exception(f"Cleanup failed for owner={owner_id}")
            log_event("cleanup", owner_id, "error")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} expired transfer session(s) for owner={owner_id}")
        log_event("cleanup", owner_id, f"deleted={deleted}")
        return deleted

    async def get_current(self, owner_id: str) -> Optional[TransferSession]:
        return await self._with_retry("select_by_owner", lambda: self._store.select_by_owner(owner_id))

    async def has_active_session(self, owner_id: str) -> bool:
        row = await self.get_current(owner_id)
        if row is None:
            return False
        return not row.consumed and row.expires_at > self._now()

    async def invalidate(self, owner_id: str) -> bool:
        deleted = await self._with_retry("delete_by_owner", lambda: self._store.delete_by_owner(owner_id))
        if deleted:
            logger.info(f"Transfer session invalidated: owner={owner_id}")
        return deleted


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
