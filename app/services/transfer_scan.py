"""
Consumer side of the transfer login: scan a code shown on a signed-in
device and sign this device in with a session of its own.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from app.core.errors import MalformedPayload, PermissionDenied, ScanInProgress, TransferError
from app.services.auth_service import IdentityProvider, IdentitySession
from app.services.qr_service import QRService
from app.services.sessions import TransferSessionManager

logger = logging.getLogger(__name__)


class ScanCapability(Protocol):
    async def request_permission(self) -> bool:  # pragma: no cover - Protocol
        ...

    async def start_scan(self) -> Optional[str]:  # pragma: no cover - Protocol
        """Returns the raw scanned text, or None when the user cancelled."""
        ...

    async def cancel(self) -> None:  # pragma: no cover - Protocol
        ...


class SubmittedPayload:
    """Scan capability for a payload that was already captured elsewhere (e.g. posted over HTTP)."""

    def __init__(self, raw: str):
        self._raw = raw

    async def request_permission(self) -> bool:
        return True

    async def start_scan(self) -> Optional[str]:
        return self._raw

    async def cancel(self) -> None:
        return None


@dataclass
class ScanResult:
    status: str  # "authenticated" | "cancelled" | "failed"
    session: Optional[IdentitySession] = None
    error: Optional[TransferError] = None

    @property
    def message(self) -> Optional[str]:
        return self.error.user_message if self.error else None

    @classmethod
    def failed(cls, error: TransferError) -> "ScanResult":
        return cls(status="failed", error=error)


class TransferScanCoordinator:
    def __init__(self, manager: TransferSessionManager, identity: IdentityProvider, scanner: ScanCapability):
        self._manager = manager
        self._identity = identity
        self._scanner = scanner
        self.is_scanning = False
        self.closed = False

    async def scan_and_login(self) -> ScanResult:
        if self.closed:
            return ScanResult(status="cancelled")
        if self.is_scanning:
            return ScanResult.failed(ScanInProgress())

        self.is_scanning = True
        try:
            return await self._scan_and_login()
        except TransferError as e:
            logger.warning(f"Transfer login failed: {e.code}: {e.detail}")
            return ScanResult.failed(e)
        finally:
            self.is_scanning = False

    async def _scan_and_login(self) -> ScanResult:
        if not await self._scanner.request_permission():
            raise PermissionDenied()
        if self.closed:
            return ScanResult(status="cancelled")

        try:
            raw = await self._scanner.start_scan()
        except Exception as e:
            raise MalformedPayload(f"Scan could not be decoded: {e}") from e
        if raw is None:
            logger.info("Scan cancelled by user")
            return ScanResult(status="cancelled")
        if self.closed:
            logger.info("Discarding scanned transfer code: scanner was closed")
            return ScanResult(status="cancelled")

        payload = QRService.decode_payload(raw)
        redeemed = await self._manager.validate_and_consume(payload.token)

        if self.closed:
            # Abandoned mid-flight: do not sign in behind a dismissed screen
            logger.info(f"Discarding redeemed transfer code {payload.token[:8]}: scanner was closed")
            return ScanResult(status="cancelled")

        session = await self._identity.issue_independent_session(redeemed.credential)
        logger.info(f"Signed in from transfer code: user={session.user_id}, session_id={session.session_id}")
        return ScanResult(status="authenticated", session=session)

    async def cancel_scan(self) -> None:
        # The in-flight scan_and_login clears is_scanning when it unwinds
        await self._scanner.cancel()

    def close(self) -> None:
        self.closed = True
