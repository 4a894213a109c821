"""
Vault Errors — coarse-grained error kinds surfaced by the credential vault.

Only ``public_message`` is meant to reach API responses. Diagnostic detail
belongs in the audit event ``details``, never in these exceptions.
"""


class VaultError(Exception):
    """Base class for every error raised across the vault boundary."""

    public_message: str = "credential vault error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.public_message)


class ConfigurationError(VaultError):
    """Fatal startup error: missing or unusable master key material."""

    public_message = "credential vault is not configured"


class NotFoundError(VaultError):
    """No credential stored for the requested tenant/integration."""

    public_message = "credential not found, connection required"


class AuthenticationError(VaultError):
    """Ciphertext failed authentication (tampered, wrong binding or key)."""

    public_message = "credential invalid, reconnection required"


class HandshakeInvalidError(VaultError):
    """Handshake token failed MAC, expired, or was already consumed."""

    public_message = "connection link expired or invalid"


class StoreUnavailableError(VaultError):
    """Persistence or audit collaborator is unreachable."""

    public_message = "credential storage temporarily unavailable"


class InvalidRequestError(VaultError):
    """Malformed identifier or unsupported integration."""

    public_message = "invalid credential request"
