from __future__ import annotations

import base64
import hashlib
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..settings import settings

_DEV_KEY = "review-game-dev-only"


def _get_key() -> bytes:
    # Production refuses to start without TOKEN_ENC_KEY (see Settings.require_in_production).
    raw = settings.token_enc_key or _DEV_KEY
    return hashlib.sha256(str(raw).encode("utf-8")).digest()  # 32 bytes


def encrypt_string(plain_text: str | None) -> str | None:
    if plain_text is None:
        return None

    iv = os.urandom(12)  # 12 bytes for GCM
    ct_with_tag = AESGCM(_get_key()).encrypt(iv, str(plain_text).encode("utf-8"), None)

    # URL-safe so cursors can travel in query strings untouched.
    return "v1." + base64.urlsafe_b64encode(iv + ct_with_tag).decode("ascii").rstrip("=")


def decrypt_string(cipher_text: str | None) -> str | None:
    if not cipher_text:
        return None

    raw = str(cipher_text)
    if not raw.startswith("v1."):
        return None

    body = raw[3:]
    try:
        blob = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
    except ValueError:
        return None
    if len(blob) < 12 + 16:
        return None

    iv, data = blob[:12], blob[12:]
    try:
        return AESGCM(_get_key()).decrypt(iv, data, None).decode("utf-8")
    except (InvalidTag, UnicodeDecodeError):
        return None
