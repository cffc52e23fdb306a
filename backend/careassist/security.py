"""Security utilities for JWTs and CRM token encryption.

WHAT:
    - JWT helpers for dashboard authentication.
    - AES-256-GCM encryption for CRM access/refresh tokens, with the key
      derived by PBKDF2-HMAC-SHA256 from a dedicated server-held secret and a
      fixed application salt.

WHY:
    - CRM credentials must never be stored in plaintext.
    - The stored format `enc:<iv b64>:<ciphertext b64>` is self-describing,
      so values written before encryption was introduced (no marker) pass
      through decryption unchanged.

REFERENCES:
    - careassist/services/crm_token_service.py (persistence of encrypted tokens)
    - careassist/deps.py (CRM_TOKEN_ENCRYPTION_SECRET / CRM_TOKEN_ENCRYPTION_SALT)
"""

import base64
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from jose import jwt, JWTError


ALGORITHM = "HS256"
JWT_SECRET = os.getenv("JWT_SECRET", "")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))

ENCRYPTED_PREFIX = "enc"
PBKDF2_ITERATIONS = 100_000
DEFAULT_ENCRYPTION_SALT = "salesforce-token-encryption-salt"
IV_BYTES = 12

logger = logging.getLogger(__name__)


if not JWT_SECRET:
    # Attempt to load from local .env if running in dev
    from careassist.utils.env import load_env_file
    load_env_file()
    JWT_SECRET = os.getenv("JWT_SECRET", "")
    JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "10080"))

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET is not set. Ensure backend/.env is created or env var is exported.")


class TokenCipher:
    """AES-GCM cipher bound to one derived key.

    Each encryption uses a fresh random 96-bit IV; the GCM tag is appended to
    the ciphertext by `AESGCM.encrypt`.
    """

    def __init__(self, secret: str, salt: str = DEFAULT_ENCRYPTION_SALT, iterations: int = PBKDF2_ITERATIONS):
        if not secret:
            raise ValueError("Encryption secret must not be empty.")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode("utf-8"),
            iterations=iterations,
        )
        self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    @staticmethod
    def is_encrypted(value: str | None) -> bool:
        return bool(value) and value.startswith(f"{ENCRYPTED_PREFIX}:")

    def encrypt(self, plaintext: str, *, context: str) -> str:
        if not plaintext:
            raise ValueError("Cannot encrypt empty secret.")

        iv = secrets.token_bytes(IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
        return ":".join([
            ENCRYPTED_PREFIX,
            base64.b64encode(iv).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        ])

    def decrypt(self, value: str, *, context: str) -> str:
        """Decrypt a stored value; unmarked legacy values are returned as-is.

        Raises:
            ValueError: If a marked value is malformed or fails authentication.
        """
        if not value:
            raise ValueError("Cannot decrypt empty secret.")

        if not self.is_encrypted(value):
            logger.warning("[TOKEN_DECRYPT] Legacy unencrypted value for %s passed through", context)
            return value

        parts = value.split(":")
        if len(parts) != 3:
            logger.error("[TOKEN_DECRYPT] Malformed ciphertext for %s", context)
            raise ValueError("Malformed encrypted token.")

        try:
            iv = base64.b64decode(parts[1], validate=True)
            ciphertext = base64.b64decode(parts[2], validate=True)
            plaintext = self._aead.decrypt(iv, ciphertext, None).decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
            raise ValueError("Unable to decrypt stored token.") from exc

        logger.info("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext


@lru_cache()
def get_token_cipher() -> TokenCipher:
    """Build the process-wide cipher from CRM_TOKEN_ENCRYPTION_SECRET.

    Raises:
        RuntimeError: If the secret is not configured.
    """
    from careassist.deps import get_settings

    settings = get_settings()
    if not settings.CRM_TOKEN_ENCRYPTION_SECRET:
        raise RuntimeError(
            "CRM_TOKEN_ENCRYPTION_SECRET is not set. Generate one with "
            "`python generate_keys.py` and add it to backend/.env."
        )
    return TokenCipher(settings.CRM_TOKEN_ENCRYPTION_SECRET, settings.CRM_TOKEN_ENCRYPTION_SALT)


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a CRM token before persisting it."""
    return get_token_cipher().encrypt(plaintext, context=context)


def decrypt_secret(value: str, *, context: str) -> str:
    """Decrypt a stored CRM token (legacy plaintext passes through)."""
    return get_token_cipher().decrypt(value, context=context)


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    """Create a signed JWT for the given subject (user email)."""
    if expires_minutes is None:
        expires_minutes = JWT_EXPIRES_MINUTES
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes)
    to_encode: Dict[str, Any] = {"sub": subject, "iat": int(now.timestamp()), "exp": int(expire.timestamp())}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    """Decode and validate a JWT, returning its payload.

    Raises jose.JWTError on failure.
    """
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        logger.debug("[AUTH] JWT rejected")
        raise
