"""
Producer side of the transfer login: shows a code, keeps it fresh until it
is scanned, and reports back once another device has used it.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from app.core.errors import TransferError
from app.services.qr_service import QRService
from app.services.sessions import Clock, IssuedSession, TransferSessionManager, utc_now
from app.services.store import SessionStore, Subscription, TransferSession

logger = logging.getLogger(__name__)


def format_time(seconds: int) -> str:
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


@dataclass
class DisplayState:
    session_token: str
    expires_at: datetime
    payload: str
    qr_image: str


class SubscriptionRegistry:
    """Active change subscriptions of one coordinator, at most one per token."""

    def __init__(self):
        self._subscriptions: Dict[str, Subscription] = {}

    def add(self, token: str, subscription: Subscription) -> None:
        self.remove(token)
        self._subscriptions[token] = subscription

    def remove(self, token: str) -> bool:
        subscription = self._subscriptions.pop(token, None)
        if subscription is None:
            return False
        subscription.unsubscribe()
        logger.info(f"Unsubscribed from session: {token[:8]}")
        return True

    def clear(self) -> None:
        for token in list(self._subscriptions):
            self.remove(token)

    def __contains__(self, token: str) -> bool:
        return token in self._subscriptions

    def __len__(self) -> int:
        return len(self._subscriptions)


class TransferDisplayCoordinator:
    def __init__(
        self,
        manager: TransferSessionManager,
        store: SessionStore,
        on_authenticated: Optional[Callable[[], None]] = None,
        render: Callable[[bytes], str] = QRService.create_qr_image,
        clock: Clock | None = None,
    ):
        self._manager = manager
        self._store = store
        self._on_authenticated = on_authenticated
        self._render = render
        self._clock = clock or utc_now
        self.subscriptions = SubscriptionRegistry()

        self.state: Optional[DisplayState] = None
        self.error: Optional[str] = None
        self.loading = False
        self.authenticated = False
        self.closed = False

        # Bumped by every generate/refresh/close; stale results compare unequal
        self._generation = 0
        self._countdown: Optional[asyncio.Task] = None
        # One create in flight at a time so the last write is the displayed one
        self._issue_lock = asyncio.Lock()

    async def generate(self) -> Optional[DisplayState]:
        return await self._issue(self._manager.create)

    async def refresh(self) -> Optional[DisplayState]:
        return await self._issue(self._manager.refresh)

    async def _issue(self, issue: Callable[[], Awaitable[IssuedSession]]) -> Optional[DisplayState]:
        if self.closed:
            return None

        self._generation += 1
        generation = self._generation
        self._end_cycle()
        self.authenticated = False
        self.error = None
        self.loading = True

        try:
            async with self._issue_lock:
                if not self._is_current(generation):
                    return None
                issued = await issue()
        except TransferError as e:
            logger.warning(f"Transfer code generation failed: {e.code}: {e.detail}")
            if self._is_current(generation):
                self.state = None
                self.error = e.user_message
            return None
        finally:
            if self._is_current(generation):
                self.loading = False

        if not self._is_current(generation):
            logger.info(f"Discarding transfer code {issued.session_token[:8]}: display was closed or regenerated")
            return None

        payload = QRService.build_payload(issued.session_token)
        self.state = DisplayState(
            session_token=issued.session_token,
            expires_at=issued.expires_at,
            payload=payload,
            qr_image=self._render(payload.encode("utf-8")),
        )

        token = issued.session_token
        self.subscriptions.add(token, self._store.subscribe(token, self._listener(token, generation)))
        self._countdown = asyncio.create_task(self._run_countdown(issued.expires_at, generation))
        return self.state

    def _listener(self, token: str, generation: int) -> Callable[[TransferSession], None]:
        def on_change(row: TransferSession) -> None:
            if not row.consumed or self.authenticated or not self._is_current(generation):
                return
            self.authenticated = True
            self._cancel_countdown()
            self.subscriptions.remove(token)
            logger.info(f"Transfer code {token[:8]} used by another device")
            if self._on_authenticated:
                self._on_authenticated()

        return on_change

    async def _run_countdown(self, expires_at: datetime, generation: int) -> None:
        delay = max(0.0, (expires_at - self._clock()).total_seconds())
        await asyncio.sleep(delay)
        # A consumption delivered meanwhile wins over the refresh
        if self.authenticated or not self._is_current(generation):
            return
        logger.info("Transfer code expired without being scanned, refreshing")
        await self.refresh()

    def seconds_remaining(self) -> int:
        if self.state is None:
            return 0
        return max(0, int((self.state.expires_at - self._clock()).total_seconds()))

    def time_label(self) -> str:
        return format_time(self.seconds_remaining())

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._generation += 1
        self._end_cycle()

    def _is_current(self, generation: int) -> bool:
        return not self.closed and generation == self._generation

    def _end_cycle(self) -> None:
        self._cancel_countdown()
        self.subscriptions.clear()

    def _cancel_countdown(self) -> None:
        task = self._countdown
        self._countdown = None
        if task is None or task.done():
            return
        try:
            running = asyncio.current_task()
        except RuntimeError:
            running = None
        # The countdown itself calls refresh(); it must not cancel itself
        if task is not running:
            task.cancel()
