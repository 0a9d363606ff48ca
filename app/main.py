# FastAPI application entry point that initialises
# the app and registers API routes.

import logging

from fastapi import FastAPI

from app.core.config import settings
from app.routes.auth import router as auth_router
from app.routes.transfer import router as transfer_router

logging.basicConfig(level=logging.INFO)

app = FastAPI(title=settings.APP_NAME)
app.include_router(auth_router)
app.include_router(transfer_router)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/config")
def client_config():
    # Values the display and scan clients need to stay in step with the server
    return {
        "transfer_ttl_seconds": settings.TRANSFER_SESSION_TTL_SECONDS,
        "payload_version": settings.QR_PAYLOAD_VERSION,
        "poll_interval_ms": settings.POLL_MIN_INTERVAL_MS,
    }
