"""
Tests for vault key derivation and the credential cipher.

Tests cover:
- Per-tenant and per-purpose key independence
- Encrypt/decrypt for both AEAD backends
- Blob layout (nonce, tag, ciphertext)
- Tenant and integration binding through associated data
- Tamper detection and opaque failures
- Payload serialization
"""
import secrets

import pytest

from tenant_vault.vault.crypto import (
    MIN_BLOB_SIZE,
    NONCE_SIZE,
    CredentialCipher,
    derive_tenant_key,
    deserialize_payload,
    serialize_payload,
)
from tenant_vault.vault.exceptions import AuthenticationError, ConfigurationError


@pytest.fixture
def cipher(master_key):
    return CredentialCipher({1: master_key}, active_key_id=1)


# --- Key derivation ---

class TestKeyDerivation:
    """Tests for derive_tenant_key."""

    def test_derived_key_length(self, master_key):
        """Derived keys are 256 bits."""
        assert len(derive_tenant_key(master_key, "team_1")) == 32

    def test_deterministic(self, master_key):
        """Same inputs always give the same key."""
        assert derive_tenant_key(master_key, "team_1") == derive_tenant_key(
            master_key, "team_1"
        )

    def test_distinct_tenants(self, master_key):
        """Different tenants get different keys from one master key."""
        keys = {derive_tenant_key(master_key, f"team_{i}") for i in range(50)}
        assert len(keys) == 50

    def test_distinct_purposes(self, master_key):
        """A key derived for one purpose differs from another purpose's key."""
        assert derive_tenant_key(master_key, "team_1") != derive_tenant_key(
            master_key, "team_1", purpose="session-tokens"
        )

    def test_distinct_master_keys(self):
        """Rotating the master key changes every tenant key."""
        assert derive_tenant_key(secrets.token_bytes(32), "team_1") != (
            derive_tenant_key(secrets.token_bytes(32), "team_1")
        )

    def test_short_master_key_rejected(self):
        """A master key under 32 bytes is a configuration error."""
        with pytest.raises(ConfigurationError):
            derive_tenant_key(b"too-short", "team_1")

    def test_missing_master_key_rejected(self):
        with pytest.raises(ConfigurationError):
            derive_tenant_key(b"", "team_1")


# --- Cipher ---

class TestCredentialCipher:
    """Tests for CredentialCipher encrypt/decrypt."""

    @pytest.mark.parametrize("backend", ["aesgcm", "chacha20"])
    def test_roundtrip(self, master_key, backend):
        """Decrypting an encrypted payload returns it unchanged."""
        cipher = CredentialCipher({1: master_key}, 1, backend)
        blob = cipher.encrypt("team_1", "github", b'{"api_key":"xyz"}')
        assert cipher.decrypt("team_1", "github", blob) == b'{"api_key":"xyz"}'

    def test_empty_plaintext(self, cipher):
        blob = cipher.encrypt("team_1", "github", b"")
        assert len(blob) == MIN_BLOB_SIZE
        assert cipher.decrypt("team_1", "github", blob) == b""

    def test_blob_layout(self, cipher):
        """Blob is nonce(12) + tag(16) + ciphertext of plaintext length."""
        plaintext = b"secret-token-value"
        blob = cipher.encrypt("team_1", "github", plaintext)
        assert len(blob) == NONCE_SIZE + 16 + len(plaintext)
        assert plaintext not in blob

    def test_fresh_nonce_per_call(self, cipher):
        """Encrypting the same plaintext twice yields different blobs."""
        a = cipher.encrypt("team_1", "github", b"same")
        b = cipher.encrypt("team_1", "github", b"same")
        assert a != b
        assert a[:NONCE_SIZE] != b[:NONCE_SIZE]

    def test_other_tenant_cannot_decrypt(self, cipher):
        """A blob moved to another tenant fails authentication."""
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError):
            cipher.decrypt("team_2", "github", blob)

    def test_other_integration_cannot_decrypt(self, cipher):
        """A blob moved to another integration row fails authentication."""
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError):
            cipher.decrypt("team_1", "slack", blob)

    def test_wrong_master_key(self, cipher):
        other = CredentialCipher({1: secrets.token_bytes(32)}, 1)
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError):
            other.decrypt("team_1", "github", blob)

    def test_every_flipped_byte_detected(self, cipher):
        """Flipping any single byte of the blob is detected."""
        blob = cipher.encrypt("team_1", "github", b'{"api_key":"xyz"}')
        for i in range(len(blob)):
            tampered = bytearray(blob)
            tampered[i] ^= 0x01
            with pytest.raises(AuthenticationError):
                cipher.decrypt("team_1", "github", bytes(tampered))

    def test_truncated_blob(self, cipher):
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError):
            cipher.decrypt("team_1", "github", blob[:MIN_BLOB_SIZE - 1])

    def test_unknown_key_version(self, cipher):
        """A key version that is no longer loaded cannot decrypt."""
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError):
            cipher.decrypt("team_1", "github", blob, key_version=7)

    def test_error_hides_library_exception(self, cipher):
        """The raised error carries no chained cryptography exception."""
        blob = cipher.encrypt("team_1", "github", b"secret")
        with pytest.raises(AuthenticationError) as exc:
            cipher.decrypt("team_2", "github", blob)
        assert exc.value.__cause__ is None
        assert exc.value.__suppress_context__ is True
        assert str(exc.value) == AuthenticationError.public_message

    def test_key_versions_are_separate(self, master_key):
        """Blobs decrypt only under the version they were written with."""
        cipher = CredentialCipher({1: master_key, 2: secrets.token_bytes(32)}, 2)
        old_blob = cipher.encrypt("team_1", "github", b"secret", key_version=1)
        assert cipher.decrypt("team_1", "github", old_blob, key_version=1) == b"secret"
        with pytest.raises(AuthenticationError):
            cipher.decrypt("team_1", "github", old_blob)

    def test_active_version_must_exist(self, master_key):
        with pytest.raises(ConfigurationError):
            CredentialCipher({1: master_key}, active_key_id=2)

    def test_unsupported_backend(self, master_key):
        with pytest.raises(ConfigurationError):
            CredentialCipher({1: master_key}, 1, "des")


# --- Serialization ---

class TestPayloadSerialization:
    """Tests for serialize_payload/deserialize_payload."""

    def test_dict_payload(self):
        payload = {"access_token": "gho_abc", "scopes": ["repo"], "expires": None}
        assert deserialize_payload(serialize_payload(payload)) == payload

    def test_bytes_payload(self):
        raw = secrets.token_bytes(24)
        assert deserialize_payload(serialize_payload(raw)) == raw

    def test_unserializable_payload(self):
        with pytest.raises(TypeError):
            serialize_payload(object())

    def test_reserved_key_rejected(self):
        """A dict shaped like the bytes wrapper would not come back as a dict."""
        with pytest.raises(ValueError):
            serialize_payload({"__vault_bytes_b64__": "aGk="})

    def test_reserved_key_nested_is_plain_data(self):
        payload = {"meta": {"__vault_bytes_b64__": "abc"}}
        assert deserialize_payload(serialize_payload(payload)) == payload

    @pytest.mark.parametrize("data", [
        b'{"__vault_bytes_b64__": "abc"}',
        b'{"__vault_bytes_b64__": 7}',
        b'{"__vault_bytes_b64__": "aGk=", "extra": 1}',
        b"not json",
    ])
    def test_malformed_plaintext(self, data):
        with pytest.raises(ValueError):
            deserialize_payload(data)
