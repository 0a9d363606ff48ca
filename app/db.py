from typing import Dict


class InMemoryDB:
    def __init__(self):
        # owner_id -> TransferSession (at most one row per owner)
        self.transfer_sessions: Dict[str, object] = {}

        # session_token -> owner_id, token lookup index for transfer_sessions
        self.transfer_tokens: Dict[str, str] = {}

        # refresh_token -> { "session_id": str, "user_id": str, "created_at": datetime, "revoked": bool }
        self.identity_sessions: Dict[str, dict] = {}

        # session_id -> refresh_token
        self.identity_session_ids: Dict[str, str] = {}

        # Simple user store: username -> password
        self.users: Dict[str, str] = {
            "alice": "password123",
            "bob": "securepass"
        }

    def reset(self) -> None:
        self.transfer_sessions.clear()
        self.transfer_tokens.clear()
        self.identity_sessions.clear()
        self.identity_session_ids.clear()


db = InMemoryDB()
