# Security-related helpers such as JWT creation and token handling.
import secrets
import time

import jwt

from app.core.config import settings


def create_access_token(sub: str, extra: dict | None = None, exp_seconds: int | None = None) -> str:
    now = int(time.time())
    if exp_seconds is None:
        exp_seconds = settings.ACCESS_TOKEN_TTL_SECONDS
    payload = {
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "iat": now,
        "nbf": now,
        "exp": now + exp_seconds,
        "sub": sub,
    }

    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm="HS256")


def decode_access_token(token: str) -> dict:
    """
    Verifies signature, expiry, issuer and audience.
    Raises jwt.InvalidTokenError on any failure.
    """
    return jwt.decode(
        token,
        settings.JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
    )


def new_refresh_token() -> str:
    return secrets.token_urlsafe(32)


def new_transfer_token() -> str:
    # 128 bits of randomness
    return secrets.token_hex(16)
