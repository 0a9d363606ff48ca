import base64
import io
import json
import time
from dataclasses import dataclass
from typing import Optional

import qrcode

from app.core.config import settings
from app.core.errors import MalformedPayload


@dataclass
class TransferPayload:
    token: str
    version: Optional[str] = None
    timestamp: Optional[int] = None


class QRService:
    @staticmethod
    def build_payload(session_token: str, timestamp_ms: int | None = None) -> str:
        """
        Builds the scannable payload string.
        Structure: { "token": "...", "version": "1.0", "timestamp": <epoch-ms> }
        The credential is never part of it, only the opaque session token.
        """
        if timestamp_ms is None:
            timestamp_ms = int(time.time() * 1000)
        data = {
            "token": session_token,
            "version": settings.QR_PAYLOAD_VERSION,
            "timestamp": timestamp_ms,
        }
        return json.dumps(data, separators=(',', ':'))

    @staticmethod
    def create_qr_image(data: str | bytes) -> str:
        """
        Creates a QR code image and returns it as a base64 string
        """
        if isinstance(data, bytes):
            data = data.decode("utf-8")

        qr = qrcode.QRCode(
            version=None,
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=settings.QR_BOX_SIZE,
            border=settings.QR_BORDER,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="#2b303a", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()
        return img_str

    @staticmethod
    def decode_payload(raw: str | bytes) -> TransferPayload:
        """
        Parses a scanned payload. Unknown fields are ignored.
        Raises MalformedPayload when the structure is not a transfer payload.
        """
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedPayload("Scanned payload is not valid JSON") from exc

        if not isinstance(data, dict):
            raise MalformedPayload("Scanned payload is not a JSON object")

        token = data.get("token")
        if not isinstance(token, str) or not token:
            raise MalformedPayload("Scanned payload has no token")

        version = data.get("version")
        timestamp = data.get("timestamp")
        return TransferPayload(
            token=token,
            version=version if isinstance(version, str) else None,
            timestamp=timestamp if isinstance(timestamp, int) and not isinstance(timestamp, bool) else None,
        )
