from __future__ import annotations

import base64
import logging

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

log = logging.getLogger(__name__)


def _derive_key(secret: str) -> bytes:
    """Derive a fernet key from arbitrary secret.

    Fernet expects urlsafe base64-encoded 32-byte key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"gramvpn-panel-v1",
        info=b"xui-panel-password",
    )
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode("utf-8")))


def get_fernet(secret: str | None) -> Fernet | None:
    secret = (secret or "").strip()
    if not secret:
        return None
    # allow passing a raw fernet key or any secret
    try:
        if len(secret) >= 40 and all(c.isalnum() or c in "-_=" for c in secret):
            return Fernet(secret.encode("utf-8"))
    except ValueError:
        pass
    return Fernet(_derive_key(secret))


def encrypt_panel_password(password: str, secret: str | None) -> str:
    f = get_fernet(secret)
    if f is None:
        log.warning("panel_secret_missing_store_plaintext")
        return password
    return f.encrypt(password.encode("utf-8")).decode("utf-8")


def decrypt_panel_password(stored: str, secret: str | None) -> str:
    f = get_fernet(secret)
    if f is None:
        return stored
    try:
        return f.decrypt(stored.encode("utf-8")).decode("utf-8")
    except InvalidToken:
        # rows inserted before encryption was enabled
        return stored
