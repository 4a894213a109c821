"""
Vault Configuration — Master key loading and validated settings.

Reads master keys from environment variables in the format:
    VAULT_MASTER_KEY_v{N} = <base64-encoded key, at least 32 bytes>
    VAULT_ACTIVE_KEY_ID = <integer>

A single ``VAULT_MASTER_KEY`` is accepted as version 1 for deployments
that have never rotated. When ``VAULT_ACTIVE_KEY_ID`` is unset the highest
loaded version is active.

Security Note:
    Never log key material. Only log key IDs and version numbers.
"""
import os
import re
import base64
import binascii
import secrets
import logging

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError

logger = logging.getLogger("tenant_vault.vault")

MIN_KEY_LENGTH = 32  # 256 bits
DEFAULT_HANDSHAKE_MAX_AGE = 600

_KEY_ENV_PATTERN = re.compile(r"^VAULT_MASTER_KEY_v(\d+)$")
_TRUE_VALUES = ("1", "true", "yes", "on")


def _decode_key(name: str, value: str) -> bytes:
    try:
        key_bytes = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError(f"{name} is not valid base64") from None
    if len(key_bytes) < MIN_KEY_LENGTH:
        raise ConfigurationError(
            f"{name} must decode to at least {MIN_KEY_LENGTH} bytes, "
            f"got {len(key_bytes)}"
        )
    return key_bytes


def load_master_keys() -> dict[int, bytes]:
    """Load master keys from VAULT_MASTER_KEY_v{N} environment variables.

    Returns:
        Mapping of key version (int) to raw key bytes.

    Raises:
        ConfigurationError: If no master key is set, or one is malformed
            or shorter than 32 bytes.
    """
    keys: dict[int, bytes] = {}
    for name, value in os.environ.items():
        match = _KEY_ENV_PATTERN.match(name)
        if match:
            keys[int(match.group(1))] = _decode_key(name, value)
    if not keys and os.environ.get("VAULT_MASTER_KEY"):
        keys[1] = _decode_key("VAULT_MASTER_KEY", os.environ["VAULT_MASTER_KEY"])
    if not keys:
        raise ConfigurationError(
            "No vault master keys found in environment. "
            "Set VAULT_MASTER_KEY_v1=<base64-encoded-32-byte-key>"
        )
    logger.debug("Loaded %d master key version(s): %s", len(keys), sorted(keys.keys()))
    return keys


def get_active_key_id(master_keys: dict[int, bytes]) -> int:
    """Read the active master key version from VAULT_ACTIVE_KEY_ID.

    Falls back to the highest available version when the variable is unset.

    Raises:
        ConfigurationError: If the value is not an integer.
    """
    raw = os.environ.get("VAULT_ACTIVE_KEY_ID")
    if raw is None:
        return max(master_keys)
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"VAULT_ACTIVE_KEY_ID must be an integer, got {raw!r}"
        ) from None


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.
    """
    return base64.b64encode(secrets.token_bytes(MIN_KEY_LENGTH)).decode("ascii")


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    master_keys: dict[int, bytes] = Field(repr=False)
    active_key_id: int
    cipher_backend: str = Field(default="aesgcm")
    handshake_max_age: int = Field(default=DEFAULT_HANDSHAKE_MAX_AGE, ge=1, le=86400)
    audit_best_effort: bool = False

    model_config = {"arbitrary_types_allowed": True, "frozen": True}

    @field_validator("master_keys")
    @classmethod
    def validate_master_keys(cls, v: dict[int, bytes]) -> dict[int, bytes]:
        """Every master key version must carry at least 256 bits."""
        if not v:
            raise ConfigurationError("At least one master key is required")
        for version, key in v.items():
            if len(key) < MIN_KEY_LENGTH:
                raise ConfigurationError(
                    f"Master key v{version} is shorter than {MIN_KEY_LENGTH} bytes"
                )
        return v

    @field_validator("cipher_backend")
    @classmethod
    def validate_cipher(cls, v: str) -> str:
        """Validate cipher backend is supported."""
        v = v.lower()
        if v not in ("aesgcm", "chacha20"):
            raise ConfigurationError(f"Unsupported cipher backend: {v}")
        return v

    @model_validator(mode="after")
    def validate_active_key_exists(self) -> "VaultConfig":
        """Ensure active_key_id is present in master_keys."""
        if self.active_key_id not in self.master_keys:
            raise ConfigurationError(
                f"active_key_id {self.active_key_id} not found in "
                f"master_keys (available: {sorted(self.master_keys.keys())})"
            )
        return self

    @property
    def active_master_key(self) -> bytes:
        return self.master_keys[self.active_key_id]

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Raises:
            ConfigurationError: On any missing or invalid setting. The
                process must not serve traffic when this is raised.
        """
        master_keys = load_master_keys()
        active_key_id = get_active_key_id(master_keys)
        cipher_backend = os.environ.get("VAULT_CIPHER_BACKEND", "aesgcm")
        try:
            max_age = int(
                os.environ.get("VAULT_HANDSHAKE_MAX_AGE", DEFAULT_HANDSHAKE_MAX_AGE)
            )
        except ValueError:
            raise ConfigurationError(
                "VAULT_HANDSHAKE_MAX_AGE must be an integer"
            ) from None
        best_effort = (
            os.environ.get("VAULT_AUDIT_BEST_EFFORT", "").lower() in _TRUE_VALUES
        )
        try:
            config = cls(
                master_keys=master_keys,
                active_key_id=active_key_id,
                cipher_backend=cipher_backend,
                handshake_max_age=max_age,
                audit_best_effort=best_effort,
            )
        except ValidationError as err:
            raise ConfigurationError(
                f"Invalid vault configuration: {err.error_count()} error(s)"
            ) from None
        logger.info(
            "Vault configured: active key v%d, cipher=%s",
            config.active_key_id, config.cipher_backend,
        )
        return config
