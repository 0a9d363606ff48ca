import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

import jwt

from app.core.errors import IdentityEstablishFailed
from app.core.security import create_access_token, decode_access_token, new_refresh_token
from app.db import InMemoryDB, db

"""AuthService: issues and redeems identity sessions for the transfer login flow"""

logger = logging.getLogger(__name__)


class InvalidCredentials(Exception):
    pass


@dataclass
class IdentitySession:
    user_id: str
    session_id: str
    access_token: str
    refresh_token: str
    created_at: datetime


class IdentityProvider(Protocol):
    """The two identity calls the transfer protocol makes."""

    async def get_current_session(self) -> Optional[IdentitySession]:  # pragma: no cover - Protocol
        ...

    async def issue_independent_session(self, credential: str) -> IdentitySession:  # pragma: no cover - Protocol
        ...


class AuthService:
    def __init__(self, database: InMemoryDB | None = None):
        self._db = database if database is not None else db

    def _issue(self, user_id: str) -> IdentitySession:
        session_id = secrets.token_hex(16)
        refresh_token = new_refresh_token()
        created_at = datetime.now(timezone.utc)

        self._db.identity_sessions[refresh_token] = {
            "session_id": session_id,
            "user_id": user_id,
            "created_at": created_at,
            "revoked": False,
        }
        self._db.identity_session_ids[session_id] = refresh_token

        access_token = create_access_token(user_id, extra={"sid": session_id})
        return IdentitySession(
            user_id=user_id,
            session_id=session_id,
            access_token=access_token,
            refresh_token=refresh_token,
            created_at=created_at,
        )

    def sign_in(self, username: str, password: str) -> IdentitySession:
        expected = self._db.users.get(username)
        if expected is None or not hmac.compare_digest(expected.encode(), password.encode()):
            logger.warning(f"Sign in failed: user={username}")
            raise InvalidCredentials("Invalid username or password")

        session = self._issue(username)
        logger.info(f"Sign in: user={username}, session_id={session.session_id}")
        return session

    def session_for_access_token(self, access_token: str) -> Optional[IdentitySession]:
        """
        Resolves a bearer token to its live identity session.
        Returns None for invalid, expired or revoked tokens.
        """
        try:
            claims = decode_access_token(access_token)
        except jwt.InvalidTokenError as e:
            logger.info(f"Access token rejected: {type(e).__name__}")
            return None

        refresh_token = self._db.identity_session_ids.get(claims.get("sid", ""))
        record = self._db.identity_sessions.get(refresh_token) if refresh_token else None
        if not record or record["revoked"] or record["user_id"] != claims.get("sub"):
            return None

        return IdentitySession(
            user_id=record["user_id"],
            session_id=record["session_id"],
            access_token=access_token,
            refresh_token=refresh_token,
            created_at=record["created_at"],
        )

    def is_active(self, session_id: str) -> bool:
        refresh_token = self._db.identity_session_ids.get(session_id)
        record = self._db.identity_sessions.get(refresh_token) if refresh_token else None
        return bool(record) and not record["revoked"]

    def redeem_credential(self, refresh_token: str) -> IdentitySession:
        """
        Exchanges a renewable credential for a brand-new session of the same user.
        The session the credential belongs to stays valid.
        """
        record = self._db.identity_sessions.get(refresh_token)
        if not record or record["revoked"]:
            logger.warning("Credential redemption failed: unknown or revoked credential")
            raise InvalidCredentials("Credential rejected")

        session = self._issue(record["user_id"])
        logger.info(
            f"Credential redeemed: user={session.user_id}, "
            f"source_session={record['session_id']}, new_session={session.session_id}"
        )
        return session

    def sign_out(self, session_id: str) -> bool:
        refresh_token = self._db.identity_session_ids.get(session_id)
        record = self._db.identity_sessions.get(refresh_token) if refresh_token else None
        if not record:
            return False
        record["revoked"] = True
        logger.info(f"Signed out: session_id={session_id}")
        return True


class DeviceIdentity:
    """
    Identity state of one device. The producer reads its current session,
    the consumer replaces its current session with a redeemed one.
    """

    def __init__(self, auth: AuthService, session: Optional[IdentitySession] = None):
        self._auth = auth
        self.session = session

    async def get_current_session(self) -> Optional[IdentitySession]:
        if self.session is None or not self._auth.is_active(self.session.session_id):
            return None
        return self.session

    async def issue_independent_session(self, credential: str) -> IdentitySession:
        try:
            session = self._auth.redeem_credential(credential)
        except InvalidCredentials as e:
            raise IdentityEstablishFailed(str(e)) from e
        self.session = session
        return session
