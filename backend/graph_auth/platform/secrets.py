"""
Secrets handling for the Graph credential service.

SECURITY REQUIREMENTS:
- Access tokens are NEVER stored in plaintext in the DB
- Access tokens are NEVER written to logs in full
- All encrypt/decrypt operations MUST go through this module

This module provides:
1. Fernet encryption of stored credentials (key derived from ENCRYPTION_KEY)
2. Fixed-length previews of secrets for status listings
3. Automatic secret redaction from log records

Usage:
    from graph_auth.platform.secrets import encrypt_secret, decrypt_secret, mask_secret

    encrypted = await encrypt_secret(access_token)
    access_token = await decrypt_secret(encrypted)

    logger.info("Stored credential", extra={"preview": mask_secret(access_token)})
"""

import base64
import hashlib
import logging
import os
import re
import threading
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

# Key names whose values are always redacted
SECRET_PATTERNS = [
    re.compile(r"(access[_-]?token)", re.IGNORECASE),
    re.compile(r"(input[_-]?token)", re.IGNORECASE),
    re.compile(r"(fb[_-]?exchange[_-]?token)", re.IGNORECASE),
    re.compile(r"(client[_-]?secret)", re.IGNORECASE),
    re.compile(r"(app[_-]?secret)", re.IGNORECASE),
    re.compile(r"(encryption[_-]?key)", re.IGNORECASE),
    re.compile(r"(password)", re.IGNORECASE),
    re.compile(r"(database[_-]?url)", re.IGNORECASE),
    re.compile(r"^(secret)$", re.IGNORECASE),
    re.compile(r"^(code)$", re.IGNORECASE),
]

# Secret-shaped values redacted wherever they appear
SECRET_VALUE_PATTERNS = [
    re.compile(r"(EAA[a-zA-Z0-9]{20,})"),  # Graph user/page tokens
    re.compile(r"(IGQ[a-zA-Z0-9_-]{20,})"),  # Instagram tokens
    re.compile(r"(Bearer\s+[a-zA-Z0-9._-]+)"),
]

# Query-string parameters whose values are redacted in URLs
SECRET_QUERY_PATTERN = re.compile(
    r"((?:access_token|input_token|fb_exchange_token|client_secret|code)=)[^&\s]+"
)

REDACTED_VALUE = "[REDACTED]"

PREVIEW_PREFIX_CHARS = 10
PREVIEW_SUFFIX_CHARS = 4

_KEY_SALT = b"graph-auth-credential-salt"


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""
    pass


class SecretsManager:
    """
    Encrypts and decrypts stored credentials with a Fernet key.

    The key is derived lazily from ENCRYPTION_KEY so that importing this
    module never requires the environment to be configured.
    """

    def __init__(self, encryption_key: Optional[str] = None):
        self._explicit_key = encryption_key
        self._fernet: Optional[Fernet] = None
        self._lock = threading.Lock()

    def _get_fernet(self) -> Fernet:
        with self._lock:
            if self._fernet is not None:
                return self._fernet

            encryption_key = self._explicit_key or os.getenv("ENCRYPTION_KEY")
            if not encryption_key:
                raise EncryptionError(
                    "No encryption configuration found. Set ENCRYPTION_KEY."
                )

            derived_key = hashlib.pbkdf2_hmac(
                "sha256",
                encryption_key.encode(),
                _KEY_SALT,
                100000,
                dklen=32,  # Fernet requires 32 bytes
            )
            self._fernet = Fernet(base64.urlsafe_b64encode(derived_key))
            logger.info("Credential encryption initialized")
            return self._fernet

    def reset(self) -> None:
        """Forget the derived key (tests change ENCRYPTION_KEY between runs)."""
        with self._lock:
            self._fernet = None

    async def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a plaintext string.

        Raises:
            ValueError: If plaintext is empty
            EncryptionError: If no key is configured
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty string")

        fernet = self._get_fernet()
        return fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    async def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt an encrypted string.

        Raises:
            ValueError: If ciphertext is empty
            EncryptionError: If the ciphertext was produced with another key
        """
        if not ciphertext:
            raise ValueError("Cannot decrypt empty string")

        fernet = self._get_fernet()
        try:
            return fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise EncryptionError("Invalid ciphertext or wrong encryption key")


# Singleton instance
_secrets_manager = SecretsManager()


async def encrypt_secret(plaintext: str) -> str:
    """Encrypt a secret for storage."""
    return await _secrets_manager.encrypt(plaintext)


async def decrypt_secret(ciphertext: str) -> str:
    """Decrypt a stored secret."""
    return await _secrets_manager.decrypt(ciphertext)


def reset_secrets_manager() -> None:
    """Drop the cached key. For tests only."""
    _secrets_manager.reset()


def is_secret_key(key: str) -> bool:
    """Check if a dictionary key likely contains a secret."""
    return any(pattern.search(key) for pattern in SECRET_PATTERNS)


def redact_value(value: Any) -> Any:
    """
    Redact secret patterns from a value.

    Query-string style matches keep their parameter name so the log line
    still shows which parameter was present.
    """
    if not isinstance(value, str):
        return value

    result = SECRET_QUERY_PATTERN.sub(lambda m: m.group(1) + REDACTED_VALUE, value)
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)

    return result


def redact_secrets(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact secrets from a data structure.

    Use this before logging any provider payload or request parameters.

    Usage:
        logger.info("Graph request", extra={"params": redact_secrets(params)})
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_secret_key(key):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_secrets(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_secrets(item, _depth + 1) for item in data]

    if isinstance(data, str):
        return redact_value(data)

    return data


def mask_secret(secret: Optional[str]) -> str:
    """
    Preview a secret as its first 10 and last 4 characters.

    Short secrets are fully masked so the preview never reveals
    more than half of the value.

    Returns:
        Masked string like "EAAGm0PX4Z...x9Qz"
    """
    if not secret:
        return "****"

    if len(secret) <= (PREVIEW_PREFIX_CHARS + PREVIEW_SUFFIX_CHARS) * 2:
        return "*" * max(len(secret), 4)

    return f"{secret[:PREVIEW_PREFIX_CHARS]}...{secret[-PREVIEW_SUFFIX_CHARS:]}"


class SecretRedactingFilter(logging.Filter):
    """
    Logging filter that redacts secrets from log records.

    Usage:
        handler.addFilter(SecretRedactingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_secrets(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if is_secret_key(key):
                setattr(record, key, REDACTED_VALUE)

        return True


def app_access_token(app_id: str, app_secret: str) -> str:
    """
    Build the app access token used for token introspection.

    IMPORTANT: Never log the return value of this function.
    """
    return f"{app_id}|{app_secret}"
