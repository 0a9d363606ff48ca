# Identity routes: password sign in, sign out, and the bearer-token
# dependency used by the transfer routes.

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from app.db import db
from app.services.auth_service import AuthService, DeviceIdentity, IdentitySession, InvalidCredentials
from app.services.limiter import limiter

router = APIRouter(prefix="/auth", tags=["auth"])
auth_service = AuthService(db)
bearer = HTTPBearer(auto_error=False)


class LoginReq(BaseModel):
    username: str
    password: str


class SessionResp(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


def session_response(session: IdentitySession) -> SessionResp:
    return SessionResp(
        user_id=session.user_id,
        session_id=session.session_id,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
    )


def require_identity(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> DeviceIdentity:
    # The signed-in caller, viewed as the device that owns the session
    if creds is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    session = auth_service.session_for_access_token(creds.credentials)
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session")
    return DeviceIdentity(auth_service, session)


@router.post("/login", response_model=SessionResp)
def login(req: LoginReq, request: Request):
    limiter.check(request, "login")
    try:
        session = auth_service.sign_in(req.username, req.password)
    except InvalidCredentials as e:
        raise HTTPException(status_code=401, detail=str(e))
    return session_response(session)


@router.post("/logout")
def logout(identity: DeviceIdentity = Depends(require_identity)):
    auth_service.sign_out(identity.session.session_id)
    return {"ok": True}
