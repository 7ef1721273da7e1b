"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import base64
import hashlib
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from trustcore.logging import get_logger

logger = get_logger(__name__)


def hash_secret(value: str) -> str:
    """One-way digest for high-entropy secrets (session tokens, tickets, codes)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class SecretCipher:
    """Fernet wrapper encrypting TOTP secrets before they reach storage."""

    def __init__(self, key_material: Optional[str] = None, *, fs_root: Optional[str] = None):
        material = key_material or os.getenv("MFA_SECRET_KEY")
        if not material:
            material = self._load_or_create_key(Path(fs_root or "/srv/trustcore"))
        try:
            self._fernet = Fernet(self._derive_key(material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    @staticmethod
    def _load_or_create_key(fs_root: Path) -> str:
        key_path = fs_root / ".mfa_secret_key"
        if key_path.exists() and not key_path.is_symlink():
            persisted = key_path.read_text().strip()
            if persisted:
                return persisted
        generated = secrets.token_urlsafe(64)
        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            key_path.write_text(generated)
            os.chmod(key_path, 0o600)
        except OSError as exc:
            raise RuntimeError(
                "Unable to persist MFA encryption key; set MFA_SECRET_KEY or make SHARED_FS_ROOT writable"
            ) from exc
        logger.warning("mfa_secret_key_generated", path=str(key_path))
        return generated

    def encrypt(self, secret: str) -> str:
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            logger.error("mfa_secret_decrypt_failed")
            raise RuntimeError("stored TOTP secret cannot be decrypted") from exc
