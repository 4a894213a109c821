"""
CredentialVault — tenant-bound storage of third-party integration secrets.

Provides the public API the route layer calls with a resolved tenant:
- ``begin_handshake(tenant_id, user_id)`` — issue a connect-flow token
- ``complete_handshake(token, max_age, payload, integration_id=...)`` —
  verify the callback token once, then encrypt and persist the credential
- ``store_credential(...)`` — overwrite a credential directly (refresh)
- ``load_credential(tenant_id, integration_id)`` — decrypt a credential
- ``revoke_credential(tenant_id, integration_id, actor_user_id)`` — delete it

Every call appends exactly one audit event, success or failure. If the
audit sink is down the call fails closed, unless the configuration opts
into best-effort auditing.

Security Note:
    Never log plaintext or ciphertext values. Only log tenant IDs,
    integration IDs, key versions and operations. Exceptions leaving this
    module carry only their public message; diagnostics go to the audit
    event ``details``.
"""
import time
import logging
from typing import Any, Callable, NoReturn

from .audit import AuditAction, AuditEvent, AuditLog, AuditOutcome
from .config import VaultConfig
from .crypto import CredentialCipher, deserialize_payload, serialize_payload
from .exceptions import (
    AuthenticationError,
    HandshakeInvalidError,
    InvalidRequestError,
    NotFoundError,
    StoreUnavailableError,
    VaultError,
)
from .handshake import HandshakeClaims, HandshakeTokenService, NonceStore
from .registry import IntegrationRegistry, default_registry
from .store import CredentialStore, TenantCredentialRecord

logger = logging.getLogger("tenant_vault.vault")

SYSTEM_ACTOR = "system"
# ":" is not allowed in identifiers, so this never names a real tenant or user
UNKNOWN = ":unknown"
_MAX_ID_LENGTH = 255


class CredentialVault:
    """Encrypted credential vault shared by all tenants of a process.

    Credentials are encrypted with a key derived per tenant from the
    active master key and bound to their (tenant, integration) pair, so a
    blob copied to another row fails authentication.
    """

    def __init__(
        self,
        config: VaultConfig,
        store: CredentialStore,
        audit_log: AuditLog,
        *,
        registry: IntegrationRegistry | None = None,
        nonce_store: NonceStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._store = store
        self._audit_log = audit_log
        self._registry = registry if registry is not None else default_registry()
        self._cipher = CredentialCipher(
            config.master_keys, config.active_key_id, config.cipher_backend,
        )
        self._tokens = HandshakeTokenService(
            config.active_master_key, nonce_store=nonce_store, clock=clock,
        )

    @classmethod
    def from_env(
        cls,
        store: CredentialStore,
        audit_log: AuditLog,
        **kwargs: Any,
    ) -> "CredentialVault":
        """Build a vault from ``VAULT_*`` environment settings.

        Raises:
            ConfigurationError: If master keys are missing or invalid.
        """
        return cls(VaultConfig.from_env(), store, audit_log, **kwargs)

    @property
    def registry(self) -> IntegrationRegistry:
        return self._registry

    @property
    def cipher(self) -> CredentialCipher:
        return self._cipher

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_id(self, value: Any, field: str) -> None:
        """Validate an identifier.

        Raises:
            InvalidRequestError: If it is empty, too long, or contains ':'.
        """
        if not isinstance(value, str) or not value:
            raise InvalidRequestError(f"{field} cannot be empty")
        if len(value) > _MAX_ID_LENGTH:
            raise InvalidRequestError(
                f"{field} cannot exceed {_MAX_ID_LENGTH} characters"
            )
        if ":" in value:
            raise InvalidRequestError(f"{field} cannot contain ':'")

    def _validate_integration(self, integration_id: Any) -> str:
        """Check an integration is registered; returns its plain string id."""
        self._validate_id(integration_id, "integration_id")
        if not self._registry.is_supported(integration_id):
            raise InvalidRequestError(
                f"Unsupported integration: {integration_id}"
            )
        return self._registry.get(integration_id).type.value

    # ------------------------------------------------------------------
    # Audit helpers
    # ------------------------------------------------------------------

    async def _audit(
        self,
        action: AuditAction,
        tenant_id: str,
        integration_id: str | None,
        actor_user_id: str,
        outcome: AuditOutcome = AuditOutcome.SUCCESS,
        /,
        **details: Any,
    ) -> None:
        """Append one audit event, failing closed unless best-effort."""
        event = AuditEvent(
            action=action,
            tenant_id=tenant_id,
            integration_id=integration_id,
            actor_user_id=actor_user_id,
            outcome=outcome,
            details=details,
        )
        try:
            await self._audit_log.record(event)
        except Exception as err:
            if self._config.audit_best_effort:
                logger.error(
                    "Audit event %s dropped for tenant=%s: %s",
                    action.value, tenant_id, type(err).__name__,
                )
                return
            raise StoreUnavailableError() from None

    async def _fail(
        self,
        error: VaultError,
        action: AuditAction,
        tenant_id: str,
        integration_id: str | None,
        actor_user_id: str,
        /,
        **details: Any,
    ) -> NoReturn:
        """Audit a failed call, then raise its public error."""
        await self._audit(
            action, tenant_id, integration_id, actor_user_id,
            AuditOutcome.FAILURE, **details,
        )
        raise error from None

    # ------------------------------------------------------------------
    # Handshake
    # ------------------------------------------------------------------

    async def begin_handshake(self, tenant_id: str, user_id: str) -> str:
        """Issue a single-use token for a third-party connect flow.

        Returns:
            URL-safe token to pass as the OAuth ``state`` parameter.
        """
        action = AuditAction.HANDSHAKE_ISSUED
        try:
            self._validate_id(tenant_id, "tenant_id")
            self._validate_id(user_id, "user_id")
        except InvalidRequestError as err:
            await self._fail(
                InvalidRequestError(), action,
                str(tenant_id or UNKNOWN), None, str(user_id or UNKNOWN),
                reason="invalid_identifier", diagnostic=str(err),
            )
        token = self._tokens.issue(tenant_id, user_id)
        await self._audit(action, tenant_id, None, user_id)
        logger.debug("Handshake issued: tenant=%s user=%s", tenant_id, user_id)
        return token

    async def complete_handshake(
        self,
        token: str,
        max_age: int | None,
        payload: Any,
        *,
        integration_id: str,
    ) -> HandshakeClaims:
        """Verify a callback token and store the credential it unlocks.

        The token is checked before anything is written and consumed only
        once the payload is known to be storable; a failing call never
        leaves a partial record.

        Args:
            token: Token returned by ``begin_handshake``.
            max_age: Token lifetime in seconds; None uses the configured one.
            payload: Credential payload from the third party (JSON-able).
            integration_id: Integration the callback belongs to.

        Returns:
            Verified claims (tenant and user the credential was stored for).

        Raises:
            HandshakeInvalidError: Bad MAC, expired, or already consumed.
            InvalidRequestError: Unsupported integration or bad payload.
            StoreUnavailableError: Store or audit sink unreachable.
        """
        max_age = self._config.handshake_max_age if max_age is None else max_age
        rejected = AuditAction.HANDSHAKE_REJECTED
        try:
            claims = self._tokens.validate(token, max_age)
        except HandshakeInvalidError:
            await self._fail(
                HandshakeInvalidError(), rejected, UNKNOWN,
                integration_id if isinstance(integration_id, str) else None,
                UNKNOWN, reason="invalid_or_expired_token",
            )
        tenant_id, user_id = claims.tenant_id, claims.user_id
        try:
            integration_id = self._validate_integration(integration_id)
            plaintext = serialize_payload(payload)
        except (InvalidRequestError, TypeError, ValueError) as err:
            await self._fail(
                InvalidRequestError(), rejected, tenant_id, None, user_id,
                reason="invalid_request", diagnostic=str(err),
            )
        try:
            await self._tokens.consume(token, max_age)
        except HandshakeInvalidError:
            await self._fail(
                HandshakeInvalidError(), rejected, tenant_id, integration_id,
                user_id, reason="token_already_used",
            )
        except Exception as err:
            await self._fail(
                StoreUnavailableError(), rejected, tenant_id, integration_id,
                user_id, reason="nonce_store_unavailable",
                diagnostic=type(err).__name__,
            )
        blob = self._cipher.encrypt(tenant_id, integration_id, plaintext)
        try:
            previous = await self._store.get(tenant_id, integration_id)
            await self._store.put(
                tenant_id, integration_id, blob, self._cipher.active_key_id,
            )
        except StoreUnavailableError:
            await self._release_token(claims)
            await self._fail(
                StoreUnavailableError(), AuditAction.CREDENTIAL_STORED,
                tenant_id, integration_id, user_id, reason="store_unavailable",
            )
        try:
            await self._audit(
                AuditAction.HANDSHAKE_COMPLETED, tenant_id, integration_id,
                user_id, key_version=self._cipher.active_key_id,
            )
        except StoreUnavailableError:
            await self._undo_put(tenant_id, integration_id, blob, previous)
            await self._release_token(claims)
            raise
        logger.info(
            "Handshake completed: tenant=%s integration=%s",
            tenant_id, integration_id,
        )
        return claims

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def store_credential(
        self,
        tenant_id: str,
        integration_id: str,
        payload: Any,
        actor_user_id: str,
    ) -> None:
        """Encrypt and persist a credential, replacing any existing one."""
        action = AuditAction.CREDENTIAL_STORED
        try:
            self._validate_id(tenant_id, "tenant_id")
            self._validate_id(actor_user_id, "actor_user_id")
            integration_id = self._validate_integration(integration_id)
            plaintext = serialize_payload(payload)
        except (InvalidRequestError, TypeError, ValueError) as err:
            await self._fail(
                InvalidRequestError(), action,
                str(tenant_id or UNKNOWN), None, str(actor_user_id or UNKNOWN),
                reason="invalid_request", diagnostic=str(err),
            )
        blob = self._cipher.encrypt(tenant_id, integration_id, plaintext)
        try:
            previous = await self._store.get(tenant_id, integration_id)
            await self._store.put(
                tenant_id, integration_id, blob, self._cipher.active_key_id,
            )
        except StoreUnavailableError:
            await self._fail(
                StoreUnavailableError(), action, tenant_id, integration_id,
                actor_user_id, reason="store_unavailable",
            )
        try:
            await self._audit(
                action, tenant_id, integration_id, actor_user_id,
                key_version=self._cipher.active_key_id,
            )
        except StoreUnavailableError:
            await self._undo_put(tenant_id, integration_id, blob, previous)
            raise
        logger.debug(
            "Vault store: tenant=%s integration=%s", tenant_id, integration_id,
        )

    async def load_credential(
        self,
        tenant_id: str,
        integration_id: str,
        actor_user_id: str = SYSTEM_ACTOR,
    ) -> Any:
        """Decrypt and return a tenant's credential payload.

        Records written under an older master key version are re-encrypted
        under the active one on the way out.

        Raises:
            NotFoundError: No credential stored for the pair.
            AuthenticationError: The stored blob failed authentication.
            StoreUnavailableError: Store or audit sink unreachable.
        """
        action = AuditAction.CREDENTIAL_ACCESSED
        try:
            self._validate_id(tenant_id, "tenant_id")
            self._validate_id(actor_user_id, "actor_user_id")
            integration_id = self._validate_integration(integration_id)
        except InvalidRequestError as err:
            await self._fail(
                InvalidRequestError(), action,
                str(tenant_id or UNKNOWN), None, str(actor_user_id or UNKNOWN),
                reason="invalid_request", diagnostic=str(err),
            )
        try:
            record = await self._store.get(tenant_id, integration_id)
        except StoreUnavailableError:
            await self._fail(
                StoreUnavailableError(), action, tenant_id, integration_id,
                actor_user_id, reason="store_unavailable",
            )
        if record is None:
            await self._fail(
                NotFoundError(), action, tenant_id, integration_id,
                actor_user_id, reason="not_found",
            )
        try:
            plaintext = self._cipher.decrypt(
                tenant_id, integration_id, record.ciphertext_blob,
                record.key_version,
            )
            payload = deserialize_payload(plaintext)
        except (AuthenticationError, ValueError):
            logger.warning(
                "Credential failed authentication: tenant=%s integration=%s key_version=%d",
                tenant_id, integration_id, record.key_version,
            )
            await self._fail(
                AuthenticationError(), action, tenant_id, integration_id,
                actor_user_id, reason="authentication_failed",
                key_version=record.key_version, severity="high",
            )
        reencrypted = False
        if record.key_version != self._cipher.active_key_id:
            reencrypted = await self._reencrypt(record, plaintext)
        await self._audit(
            action, tenant_id, integration_id, actor_user_id,
            key_version=record.key_version, reencrypted=reencrypted,
        )
        return payload

    async def _reencrypt(
        self, record: TenantCredentialRecord, plaintext: bytes,
    ) -> bool:
        """Move a record onto the active key unless it changed since read."""
        tenant_id, integration_id = record.tenant_id, record.integration_id
        blob = self._cipher.encrypt(tenant_id, integration_id, plaintext)
        try:
            return await self._store.put_if_unchanged(
                tenant_id, integration_id, blob, self._cipher.active_key_id,
                record.ciphertext_blob,
            )
        except StoreUnavailableError:
            # stays readable under its old version; retried on next load
            logger.warning(
                "Lazy re-encryption deferred: tenant=%s integration=%s",
                tenant_id, integration_id,
            )
            return False

    async def _undo_put(
        self,
        tenant_id: str,
        integration_id: str,
        blob: bytes,
        previous: TenantCredentialRecord | None,
    ) -> None:
        """Roll back a write whose audit event could not be recorded."""
        try:
            if previous is None:
                await self._store.delete(tenant_id, integration_id)
            else:
                await self._store.put_if_unchanged(
                    tenant_id, integration_id, previous.ciphertext_blob,
                    previous.key_version, blob,
                )
        except StoreUnavailableError:
            logger.error(
                "Unaudited credential write left in place: tenant=%s integration=%s",
                tenant_id, integration_id,
            )

    async def _release_token(self, claims: HandshakeClaims) -> None:
        """Let a handshake be retried after its credential was not kept."""
        try:
            await self._tokens.release(claims)
        except Exception as err:
            logger.warning(
                "Handshake token stays consumed for tenant=%s: %s",
                claims.tenant_id, type(err).__name__,
            )

    async def revoke_credential(
        self,
        tenant_id: str,
        integration_id: str,
        actor_user_id: str,
    ) -> None:
        """Delete a credential.

        The deletion is audited even when nothing was stored, so every
        revocation attempt leaves a trail.
        """
        action = AuditAction.CREDENTIAL_DELETED
        try:
            self._validate_id(tenant_id, "tenant_id")
            self._validate_id(actor_user_id, "actor_user_id")
            integration_id = self._validate_integration(integration_id)
        except InvalidRequestError as err:
            await self._fail(
                InvalidRequestError(), action,
                str(tenant_id or UNKNOWN), None, str(actor_user_id or UNKNOWN),
                reason="invalid_request", diagnostic=str(err),
            )
        try:
            existed = await self._store.delete(tenant_id, integration_id)
        except StoreUnavailableError:
            await self._fail(
                StoreUnavailableError(), action, tenant_id, integration_id,
                actor_user_id, reason="store_unavailable",
            )
        await self._audit(
            action, tenant_id, integration_id, actor_user_id, existed=existed,
        )
        logger.debug(
            "Vault revoke: tenant=%s integration=%s existed=%s",
            tenant_id, integration_id, existed,
        )
