from datetime import datetime, timedelta, timezone

from app.core.errors import StoreUnavailable
from app.services.store import InMemorySessionStore


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> None:
        self.now += timedelta(seconds=seconds, milliseconds=milliseconds)


class FlakyStore:
    """Wraps a store and fails the next N calls of the named operations."""

    def __init__(self, inner: InMemorySessionStore, failures: dict[str, int]):
        self._inner = inner
        self.failures = dict(failures)
        self.calls: dict[str, int] = {}

    def _maybe_fail(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1
        if self.failures.get(op, 0) > 0:
            self.failures[op] -= 1
            raise StoreUnavailable(f"{op}: connection reset")

    async def insert_or_replace(self, record):
        self._maybe_fail("insert_or_replace")
        return await self._inner.insert_or_replace(record)

    async def select_by_token(self, token):
        self._maybe_fail("select_by_token")
        return await self._inner.select_by_token(token)

    async def select_by_owner(self, owner_id):
        self._maybe_fail("select_by_owner")
        return await self._inner.select_by_owner(owner_id)

    async def update_consumed(self, token, consumed_at):
        self._maybe_fail("update_consumed")
        return await self._inner.update_consumed(token, consumed_at)

    async def delete_expired(self, owner_id, now):
        self._maybe_fail("delete_expired")
        return await self._inner.delete_expired(owner_id, now)

    async def delete_by_owner(self, owner_id):
        self._maybe_fail("delete_by_owner")
        return await self._inner.delete_by_owner(owner_id)

    def subscribe(self, token, on_change):
        return self._inner.subscribe(token, on_change)


class FakeScanner:
    """Scripted scan capability: returns ``result`` or raises ``error``."""

    def __init__(self, result=None, granted=True, error: Exception | None = None):
        self.result = result
        self.granted = granted
        self.error = error
        self.scans = 0
        self.cancelled = False

    async def request_permission(self) -> bool:
        return self.granted

    async def start_scan(self):
        self.scans += 1
        if self.error is not None:
            raise self.error
        return self.result

    async def cancel(self) -> None:
        self.cancelled = True
