"""Access token encryption helpers.

WHAT:
    Fernet wrappers used to store platform access tokens on Connection rows
    and to restore them when a worker builds an API client.
WHY:
    Raw tokens must never land in the database or in logs.
"""

import base64
import logging
import os
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


@lru_cache()
def _get_cipher() -> Fernet:
    """Build the Fernet cipher from TOKEN_ENCRYPTION_KEY.

    Raises:
        RuntimeError: If the key is missing or not a 32-byte urlsafe base64 string
    """
    key = os.getenv("TOKEN_ENCRYPTION_KEY", "")
    if not key:
        from adsync.utils.env import load_env_file
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY", "")

    if not key:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY is not set. Generate a Fernet key and export it "
            "or add it to a local .env file."
        )

    try:
        base64.urlsafe_b64decode(key.encode("utf-8"))
        return Fernet(key)
    except (ValueError, TypeError) as exc:
        raise RuntimeError(
            "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string."
        ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt a provider secret before persisting.

    Args:
        plaintext: Raw secret (e.g., Meta access token)
        context: Label for logs (provider/account)

    Returns:
        URL-safe base64 ciphertext suitable for DB storage
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _get_cipher().encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.debug("[TOKEN_ENCRYPT] Secret encrypted for %s", context)
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt a stored provider secret.

    Raises:
        ValueError: If the stored value is empty or cannot be decrypted
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        return _get_cipher().decrypt(ciphertext.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
