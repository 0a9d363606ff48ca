# Transfer login routes: the signed-in device issues a QR code, the
# scanning device redeems it for a session of its own.

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.core.errors import TransferError
from app.db import db
from app.routes.auth import SessionResp, auth_service, require_identity, session_response
from app.services.auth_service import DeviceIdentity
from app.services.limiter import limiter
from app.services.qr_service import QRService
from app.services.sessions import TransferSessionManager, utc_now
from app.services.store import InMemorySessionStore
from app.services.transfer_scan import SubmittedPayload, TransferScanCoordinator

router = APIRouter(prefix="/transfer", tags=["transfer"])
store = InMemorySessionStore(db)


class TransferSessionResp(BaseModel):
    session_token: str
    expires_at: datetime
    payload: str
    qr_image: str


class TransferStatusResp(BaseModel):
    active: bool
    consumed: bool = False
    expires_at: datetime | None = None
    consumed_at: datetime | None = None


class PollResp(BaseModel):
    status: str


class RedeemReq(BaseModel):
    raw_payload: str


class CleanupResp(BaseModel):
    deleted: int


def _manager(identity: DeviceIdentity | None = None) -> TransferSessionManager:
    return TransferSessionManager(store, identity=identity)


def _http_error(e: TransferError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail={"code": e.code, "message": e.user_message})


async def _issue(identity: DeviceIdentity) -> TransferSessionResp:
    try:
        issued = await _manager(identity).create()
    except TransferError as e:
        raise _http_error(e)

    payload = QRService.build_payload(issued.session_token)
    return TransferSessionResp(
        session_token=issued.session_token,
        expires_at=issued.expires_at,
        payload=payload,
        qr_image=QRService.create_qr_image(payload),
    )


@router.post("/session", response_model=TransferSessionResp)
async def create_transfer_session(identity: DeviceIdentity = Depends(require_identity)):
    return await _issue(identity)


@router.post("/refresh", response_model=TransferSessionResp)
async def refresh_transfer_session(identity: DeviceIdentity = Depends(require_identity)):
    return await _issue(identity)


@router.get("/session", response_model=TransferStatusResp)
async def current_transfer_session(identity: DeviceIdentity = Depends(require_identity)):
    manager = _manager(identity)
    try:
        row = await manager.get_current(identity.session.user_id)
        active = await manager.has_active_session(identity.session.user_id)
    except TransferError as e:
        raise _http_error(e)

    if row is None:
        return TransferStatusResp(active=False)
    return TransferStatusResp(
        active=active,
        consumed=row.consumed,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
    )


@router.delete("/session")
async def invalidate_transfer_session(identity: DeviceIdentity = Depends(require_identity)):
    try:
        deleted = await _manager(identity).invalidate(identity.session.user_id)
    except TransferError as e:
        raise _http_error(e)
    return {"deleted": deleted}


@router.post("/cleanup", response_model=CleanupResp)
async def cleanup_transfer_sessions(identity: DeviceIdentity = Depends(require_identity)):
    deleted = await _manager(identity).cleanup_expired(identity.session.user_id)
    return CleanupResp(deleted=deleted)


@router.get("/poll/{session_token}", response_model=PollResp)
async def poll(session_token: str):
    # Desktop polls for its code being used
    row = await store.select_by_token(session_token)
    if not row:
        return PollResp(status="not_found")

    if row.consumed:
        return PollResp(status="consumed")

    if row.expires_at < utc_now():
        return PollResp(status="expired")

    return PollResp(status="pending")


@router.post("/redeem", response_model=SessionResp)
async def redeem(req: RedeemReq, request: Request):
    # Scanning device exchanges the scanned payload for its own session
    limiter.check(request, "redeem")

    identity = DeviceIdentity(auth_service)
    coordinator = TransferScanCoordinator(_manager(), identity, SubmittedPayload(req.raw_payload))
    result = await coordinator.scan_and_login()
    if result.error is not None:
        raise _http_error(result.error)
    if result.session is None:
        raise HTTPException(status_code=400, detail="Scan cancelled")
    return session_response(result.session)
