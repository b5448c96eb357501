"""
QR rendering of credential payloads for the station display.
"""

from __future__ import annotations

import base64
import io

import qrcode

from presence.domain.models import Credential


def render_png(credential: Credential, box_size: int = 10, border: int = 4) -> bytes:
    """Encode the credential's JSON payload as a PNG QR code."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(credential.to_json())
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_data_uri(credential: Credential) -> str:
    """``data:image/png;base64,...`` for embedding in a dashboard page."""
    encoded = base64.b64encode(render_png(credential)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
