from __future__ import annotations

import base64
import io
import re

import qrcode


FALLBACK_LINK_BASE = "https://wa.me/"


def build_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=10,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def encode_png(png: bytes) -> str:
    return base64.b64encode(png).decode("ascii")


def fallback_link(phone_number: str | None) -> str:
    digits = re.sub(r"\D+", "", phone_number or "")
    return f"{FALLBACK_LINK_BASE}{digits}"


__all__ = ["FALLBACK_LINK_BASE", "build_qr_png", "encode_png", "fallback_link"]
