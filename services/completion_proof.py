"""Completion proof: single-use secrets exchanged as a scannable code.

The provider shows the QR code, the owner scans it and submits the secret to
confirm that the service took place.  Regenerating rotates the secret.
"""

from __future__ import annotations

import base64
import hmac
import io
import json
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import qrcode

SECRET_BYTES = 16  # 128 bits


@dataclass(frozen=True)
class CompletionProof:
    booking_id: int
    secret: str
    provider_id: int
    issued_at: datetime

    def to_payload(self) -> dict:
        return {
            "bookingId": self.booking_id,
            "completionCode": self.secret,
            "providerId": self.provider_id,
            "timestamp": self.issued_at.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), separators=(",", ":"))


def new_secret() -> str:
    return secrets.token_hex(SECRET_BYTES)


def secrets_match(expected: Optional[str], claimed: Optional[str]) -> bool:
    """Constant-time comparison; a missing stored code never matches."""
    if not expected or not claimed:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), claimed.encode("utf-8"))


def parse_payload(raw: str) -> dict:
    """Decode a scanned payload back into its fields."""
    data = json.loads(raw)
    return {
        "booking_id": int(data["bookingId"]),
        "secret": str(data["completionCode"]),
        "provider_id": int(data["providerId"]),
        "issued_at": data.get("timestamp"),
    }


def render_qr_png(proof: CompletionProof) -> bytes:
    """Encode the proof payload as a PNG QR code."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=2,
    )
    qr.add_data(proof.to_json())
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def qr_to_base64(png_bytes: Optional[bytes]) -> Optional[str]:
    """Convert QR PNG bytes to a data:image/png;base64 string for embedding."""
    if not png_bytes:
        return None
    b64 = base64.b64encode(png_bytes).decode("ascii")
    return f"data:image/png;base64,{b64}"
