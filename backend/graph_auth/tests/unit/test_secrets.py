"""
Unit tests for secrets handling.

Tests cover:
- Fernet encryption round trip and key mismatch
- Credential previews (first 10 / last 4 characters)
- Redaction of secrets from values, payloads and log records
"""

import logging

import pytest

from graph_auth.platform.secrets import (
    REDACTED_VALUE,
    EncryptionError,
    SecretRedactingFilter,
    SecretsManager,
    app_access_token,
    decrypt_secret,
    encrypt_secret,
    is_secret_key,
    mask_secret,
    redact_secrets,
    redact_value,
)
from graph_auth.tests.fakes import LONG_LIVED_TOKEN


class TestEncryption:
    """Tests for encrypt_secret / decrypt_secret."""

    @pytest.mark.asyncio
    async def test_round_trip(self):
        encrypted = await encrypt_secret(LONG_LIVED_TOKEN)

        assert encrypted != LONG_LIVED_TOKEN
        assert LONG_LIVED_TOKEN not in encrypted
        assert await decrypt_secret(encrypted) == LONG_LIVED_TOKEN

    @pytest.mark.asyncio
    async def test_ciphertext_differs_per_call(self):
        first = await encrypt_secret(LONG_LIVED_TOKEN)
        second = await encrypt_secret(LONG_LIVED_TOKEN)

        assert first != second

    @pytest.mark.asyncio
    async def test_wrong_key_raises_encryption_error(self):
        encrypted = await SecretsManager("key-one").encrypt(LONG_LIVED_TOKEN)

        with pytest.raises(EncryptionError):
            await SecretsManager("key-two").decrypt(encrypted)

    @pytest.mark.asyncio
    async def test_missing_key_raises_encryption_error(self, monkeypatch):
        monkeypatch.delenv("ENCRYPTION_KEY", raising=False)

        with pytest.raises(EncryptionError):
            await SecretsManager().encrypt(LONG_LIVED_TOKEN)

    @pytest.mark.asyncio
    async def test_empty_plaintext_rejected(self):
        with pytest.raises(ValueError):
            await encrypt_secret("")


class TestMaskSecret:
    """Tests for credential previews."""

    def test_long_secret_shows_prefix_and_suffix(self):
        assert mask_secret(LONG_LIVED_TOKEN) == "EAAlongliv...9876"

    def test_short_secret_fully_masked(self):
        assert mask_secret("a" * 28) == "*" * 28
        assert mask_secret("abc") == "****"

    def test_empty_secret(self):
        assert mask_secret("") == "****"
        assert mask_secret(None) == "****"


@pytest.mark.security
class TestRedaction:
    """Tests for secret redaction."""

    def test_secret_keys(self):
        assert is_secret_key("access_token")
        assert is_secret_key("client_secret")
        assert is_secret_key("code")
        assert not is_secret_key("graph_code")
        assert not is_secret_key("credential_kind")

    def test_query_string_values_redacted(self):
        url = "https://graph.facebook.com/v19.0/me?fields=id&access_token=abc123&code=xyz"

        redacted = redact_value(url)

        assert "abc123" not in redacted
        assert "xyz" not in redacted
        assert f"access_token={REDACTED_VALUE}" in redacted
        assert "fields=id" in redacted

    def test_graph_token_values_redacted(self):
        redacted = redact_value(f"token was {LONG_LIVED_TOKEN}")

        assert LONG_LIVED_TOKEN not in redacted
        assert REDACTED_VALUE in redacted

    def test_nested_payload(self):
        payload = {
            "access_token": "secret-one",
            "data": [{"client_secret": "secret-two", "name": "Page"}],
        }

        redacted = redact_secrets(payload)

        assert redacted["access_token"] == REDACTED_VALUE
        assert redacted["data"][0]["client_secret"] == REDACTED_VALUE
        assert redacted["data"][0]["name"] == "Page"

    def test_log_filter(self):
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname=__file__,
            lineno=1,
            msg=f"exchanged {LONG_LIVED_TOKEN}",
            args=None,
            exc_info=None,
        )
        record.access_token = LONG_LIVED_TOKEN

        assert SecretRedactingFilter().filter(record) is True
        assert LONG_LIVED_TOKEN not in record.msg
        assert record.access_token == REDACTED_VALUE


def test_app_access_token():
    assert app_access_token("123", "shh") == "123|shh"
