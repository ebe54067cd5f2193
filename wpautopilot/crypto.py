"""
Fernet encryption for stored WordPress application passwords.

The Fernet key is derived from WPAUTOPILOT_MASTER_KEY (SHA-256 of the
master material, url-safe base64). Passwords are decrypted only at the
moment a publish call needs them.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from wpautopilot.config import MASTER_KEY
from wpautopilot.errors import ValidationError

logger = logging.getLogger("crypto")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

_DEV_MASTER_KEY = "wpautopilot-development-key"


def _derive_fernet(master_key: str) -> Fernet:
    # Fernet requires a url-safe base64-encoded 32-byte key
    derived = hashlib.sha256(master_key.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(derived))


class SecretBox:
    """Encrypts and decrypts short secrets with one master key."""

    def __init__(self, master_key: Optional[str] = None) -> None:
        key = master_key if master_key is not None else MASTER_KEY
        if not key:
            logger.warning(
                "WPAUTOPILOT_MASTER_KEY not set. Using a built-in development key. "
                "This is INSECURE for production -- set the env var instead."
            )
            key = _DEV_MASTER_KEY
        self._fernet = _derive_fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError) as exc:
            raise ValidationError(
                "Stored credential cannot be decrypted (wrong master key or corrupt value)"
            ) from exc


_box_instance: Optional[SecretBox] = None


def _get_box() -> SecretBox:
    global _box_instance
    if _box_instance is None:
        _box_instance = SecretBox()
    return _box_instance


def encrypt_secret(plaintext: str) -> str:
    return _get_box().encrypt(plaintext)


def decrypt_secret(token: str) -> str:
    return _get_box().decrypt(token)
