"""Credential Vault — Encrypted integration credentials for isolated tenants.

Security Note (Threat Model):
    Master keys live in process memory for the process lifetime, and
    decrypted credentials exist in memory while a caller uses them. A memory
    dump of the application process could expose both. This is an accepted
    limitation — mitigation requires HSM/secure enclave integration which is
    out of scope.
"""

from .audit import (
    AuditAction,
    AuditEvent,
    AuditLog,
    AuditOutcome,
    MemoryAuditLog,
    PostgresAuditLog,
    verify_chain,
)
from .config import VaultConfig, generate_master_key, load_master_keys
from .credential_vault import CredentialVault
from .crypto import CredentialCipher, derive_tenant_key
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    HandshakeInvalidError,
    InvalidRequestError,
    NotFoundError,
    StoreUnavailableError,
    VaultError,
)
from .handshake import (
    HandshakeClaims,
    HandshakeTokenService,
    MemoryNonceStore,
    NonceStore,
    RedisNonceStore,
)
from .key_rotation import rotate_credentials
from .registry import (
    IntegrationDefinition,
    IntegrationRegistry,
    IntegrationType,
    default_registry,
)
from .store import (
    CredentialStore,
    MemoryCredentialStore,
    PostgresCredentialStore,
    TenantCredentialRecord,
)

__all__ = [
    "AuditAction",
    "AuditEvent",
    "AuditLog",
    "AuditOutcome",
    "MemoryAuditLog",
    "PostgresAuditLog",
    "verify_chain",
    "VaultConfig",
    "generate_master_key",
    "load_master_keys",
    "CredentialVault",
    "CredentialCipher",
    "derive_tenant_key",
    "AuthenticationError",
    "ConfigurationError",
    "HandshakeInvalidError",
    "InvalidRequestError",
    "NotFoundError",
    "StoreUnavailableError",
    "VaultError",
    "HandshakeClaims",
    "HandshakeTokenService",
    "MemoryNonceStore",
    "NonceStore",
    "RedisNonceStore",
    "rotate_credentials",
    "IntegrationDefinition",
    "IntegrationRegistry",
    "IntegrationType",
    "default_registry",
    "CredentialStore",
    "MemoryCredentialStore",
    "PostgresCredentialStore",
    "TenantCredentialRecord",
]
