"""
Vault Crypto Core — Key derivation, encryption/decryption, and serialization.

Implements tenant-bound encryption for integration credentials:
- Key layer: HKDF(MASTER_KEY_vN, salt, "tenant:{id}:{purpose}") → 32-byte tenant key
- Cipher layer: AEAD(tenant key, AAD="{tenant}:{integration}") → [nonce|tag|ciphertext]

The AAD binding means a blob moved to another tenant or integration row
fails authentication instead of decrypting under the wrong identity.

Security Note:
    Never log plaintext or ciphertext values.
    Nonces are random 96-bit; collision probability negligible under normal usage.
"""
import os
import base64
import logging
from typing import Any

import orjson
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305

from .exceptions import AuthenticationError, ConfigurationError

logger = logging.getLogger("tenant_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit tag
KEY_LENGTH = 32  # AES-256
MIN_BLOB_SIZE = NONCE_SIZE + TAG_SIZE

APPLICATION_SALT = b"tenant-vault-integration-v1"
CREDENTIALS_PURPOSE = "integration-credentials"

_BYTES_WRAPPER_KEY = "__vault_bytes_b64__"

_CIPHERS = {
    "aesgcm": AESGCM,
    "chacha20": ChaCha20Poly1305,
}


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(seed: bytes, context: str, salt: bytes | None = APPLICATION_SALT) -> bytes:
    """Derive a 32-byte key using HKDF-SHA256.

    Args:
        seed: Input key material (master key bytes).
        context: Context string for domain separation, used as HKDF ``info``.
        salt: Fixed application salt.

    Returns:
        32-byte derived key.
    """
    if not seed or len(seed) < KEY_LENGTH:
        raise ConfigurationError("Master key is missing or shorter than 32 bytes")
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


def derive_tenant_key(
    master_key: bytes,
    tenant_id: str,
    purpose: str = CREDENTIALS_PURPOSE,
) -> bytes:
    """Derive the key a tenant's credentials are encrypted with.

    Deterministic: the same master key, tenant and purpose always produce
    the same key, and keys for different tenants or purposes are
    independent of each other.
    """
    return derive_key(master_key, f"tenant:{tenant_id}:{purpose}")


def associated_data(tenant_id: str, integration_id: str) -> bytes:
    """AAD that binds a ciphertext to its (tenant, integration) row."""
    return f"{tenant_id}:{integration_id}".encode("utf-8")


# ---------------------------------------------------------------------------
# Credential cipher
# ---------------------------------------------------------------------------

class CredentialCipher:
    """AEAD encryption of credential payloads bound to tenant and integration.

    Blob format: [nonce 12B][tag 16B][ciphertext]

    Holds every configured master key version so blobs written under an
    older version stay readable until they are re-encrypted.
    """

    def __init__(
        self,
        master_keys: dict[int, bytes],
        active_key_id: int,
        cipher_backend: str = "aesgcm",
    ):
        if active_key_id not in master_keys:
            raise ConfigurationError(
                f"Active key version {active_key_id} not found in master keys"
            )
        try:
            self._cipher_cls = _CIPHERS[cipher_backend]
        except KeyError:
            raise ConfigurationError(
                f"Unsupported cipher backend: {cipher_backend}"
            ) from None
        self._master_keys = master_keys
        self.active_key_id = active_key_id

    def _aead(self, tenant_id: str, key_version: int):
        return self._cipher_cls(
            derive_tenant_key(self._master_keys[key_version], tenant_id)
        )

    def has_key_version(self, key_version: int) -> bool:
        return key_version in self._master_keys

    def encrypt(
        self,
        tenant_id: str,
        integration_id: str,
        plaintext: bytes,
        key_version: int | None = None,
    ) -> bytes:
        """Encrypt plaintext for one tenant/integration pair.

        Args:
            tenant_id: Owning tenant, selects the derived key.
            integration_id: Integration the credential belongs to.
            plaintext: Serialized credential payload.
            key_version: Master key version, defaults to the active one.

        Returns:
            Blob bytes as ``nonce || tag || ciphertext``.
        """
        version = self.active_key_id if key_version is None else key_version
        if version not in self._master_keys:
            raise ConfigurationError(f"Master key version {version} is not loaded")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead(tenant_id, version).encrypt(
            nonce, plaintext, associated_data(tenant_id, integration_id),
        )
        # cryptography appends the tag; store it ahead of the ciphertext
        return nonce + sealed[-TAG_SIZE:] + sealed[:-TAG_SIZE]

    def decrypt(
        self,
        tenant_id: str,
        integration_id: str,
        blob: bytes,
        key_version: int | None = None,
    ) -> bytes:
        """Authenticate and decrypt a blob.

        Raises:
            AuthenticationError: For any failure. Truncated blobs, wrong
                tenant or integration binding, flipped bytes and unknown
                key versions are deliberately indistinguishable.
        """
        version = self.active_key_id if key_version is None else key_version
        if len(blob) < MIN_BLOB_SIZE or version not in self._master_keys:
            raise AuthenticationError()
        nonce = blob[:NONCE_SIZE]
        tag = blob[NONCE_SIZE:MIN_BLOB_SIZE]
        ct = blob[MIN_BLOB_SIZE:]
        try:
            return self._aead(tenant_id, version).decrypt(
                nonce, ct + tag, associated_data(tenant_id, integration_id),
            )
        except InvalidTag:
            raise AuthenticationError() from None


# ---------------------------------------------------------------------------
# Payload serialization
# ---------------------------------------------------------------------------

def serialize_payload(value: Any) -> bytes:
    """Serialize a credential payload to bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    bytes values are wrapped as {"__vault_bytes_b64__": "<base64>"} for safe
    JSON round-trip, so a dict using that key at the top level is ambiguous
    and rejected.

    Raises:
        ValueError: If a dict payload carries the reserved wrapper key.
        TypeError: If the value is not JSON serializable.
    """
    if isinstance(value, dict) and _BYTES_WRAPPER_KEY in value:
        raise ValueError(f"payload key {_BYTES_WRAPPER_KEY!r} is reserved")
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped)
    return orjson.dumps(value)


def deserialize_payload(data: bytes) -> Any:
    """Deserialize bytes produced by serialize_payload.

    Raises:
        ValueError: If the data is not valid JSON or holds a malformed
            bytes wrapper.
    """
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed:
        encoded = parsed[_BYTES_WRAPPER_KEY]
        if len(parsed) != 1 or not isinstance(encoded, str):
            raise ValueError("malformed bytes payload")
        return base64.b64decode(encoded, validate=True)
    return parsed
