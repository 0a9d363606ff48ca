# Centralised application configuration
# (environment variables, constants, timeouts).

import os


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    APP_NAME = os.getenv("APP_NAME", "Transfer Login Service")
    JWT_SECRET = os.getenv("JWT_SECRET", "dev-change-me")
    JWT_ISSUER = os.getenv("JWT_ISSUER", "transfer-login-local")
    JWT_AUDIENCE = os.getenv("JWT_AUDIENCE", "transfer-login-client")
    ACCESS_TOKEN_TTL_SECONDS = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", "900"))

    TRANSFER_SESSION_TTL_SECONDS = int(os.getenv("TRANSFER_SESSION_TTL_SECONDS", "300"))  # 5 Minutes
    QR_PAYLOAD_VERSION = os.getenv("QR_PAYLOAD_VERSION", "1.0")
    QR_BOX_SIZE = int(os.getenv("QR_BOX_SIZE", "10"))
    QR_BORDER = int(os.getenv("QR_BORDER", "2"))

    # One retry after a failed store call
    STORE_MAX_ATTEMPTS = int(os.getenv("STORE_MAX_ATTEMPTS", "2"))
    STORE_RETRY_BACKOFF_MS = int(os.getenv("STORE_RETRY_BACKOFF_MS", "50"))

    POLL_MIN_INTERVAL_MS = int(os.getenv("POLL_MIN_INTERVAL_MS", "800"))

    RATE_LIMIT_ENABLED = _flag("RATE_LIMIT_ENABLED", "true")
    MAX_REQUESTS_PER_MINUTE = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "30"))

    # CSV audit trail, disabled when empty
    EVENT_LOG_FILE = os.getenv("EVENT_LOG_FILE", "")


settings = Settings()
