"""Security utilities for upstream credential encryption.

WHAT:
    Symmetric encryption for storefront access tokens stored on
    `connections.access_token_enc`.

WHY:
    Token encryption keeps provider credentials out of plaintext storage.
    Backfills decrypt on demand; an undecryptable token is treated the same
    as a missing one (HTTP 401).
"""

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken


TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

logger = logging.getLogger(__name__)


if not TOKEN_ENCRYPTION_KEY:
    # Attempt to load from local .env if running in dev
    from attribution_engine.utils.env import load_env_file
    load_env_file()
    TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY", "")

if not TOKEN_ENCRYPTION_KEY:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY is not set. Generate a 32-byte Fernet key and export it "
        "or add it to backend/.env."
    )

try:
    # Validate key length by decoding without storing plaintext material.
    base64.urlsafe_b64decode(TOKEN_ENCRYPTION_KEY.encode("utf-8"))
    _cipher = Fernet(TOKEN_ENCRYPTION_KEY)
except (ValueError, TypeError) as exc:
    raise RuntimeError(
        "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string. "
        "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
    ) from exc


def encrypt_secret(plaintext: str, *, context: str) -> str:
    """Encrypt provider secrets before persisting.

    Args:
        plaintext: Raw secret to encrypt (e.g., Shopify Admin API token).
        context:   Friendly label for logs (provider/store).

    Returns:
        URL-safe base64 ciphertext suitable for DB storage.
    """
    if not plaintext:
        raise ValueError("Cannot encrypt empty secret.")

    ciphertext = _cipher.encrypt(plaintext.encode("utf-8")).decode("utf-8")
    logger.info("[TOKEN_ENCRYPT] Secret encrypted for %s (length=%d)", context, len(plaintext))
    return ciphertext


def decrypt_secret(ciphertext: str, *, context: str) -> str:
    """Decrypt provider secrets when restoring tokens for API calls.

    Args:
        ciphertext: Encrypted token retrieved from DB.
        context:    Friendly label for logs (provider/store).

    Returns:
        Plaintext secret string.

    Raises:
        ValueError: If the stored value cannot be decrypted.
    """
    if not ciphertext:
        raise ValueError("Cannot decrypt empty secret.")

    try:
        plaintext = _cipher.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        logger.info("[TOKEN_DECRYPT] Secret decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext
    except InvalidToken as exc:
        logger.error("[TOKEN_DECRYPT] Invalid ciphertext for %s", context)
        raise ValueError("Unable to decrypt stored token.") from exc
