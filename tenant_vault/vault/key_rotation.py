"""
Vault Key Rotation — Batch re-encryption of credentials when rotating master keys.

Re-encrypts every credential from one key version to another in configurable
batches. The operation is idempotent and resumable: records already moved to
the target version no longer match the batch query. Each write is
conditional on the record still holding the blob that was read, so a refresh
landing mid-rotation is never overwritten. Records that fail are counted and
left on the old version.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging

from .audit import AuditAction, AuditEvent, AuditLog
from .crypto import CredentialCipher
from .exceptions import AuthenticationError, StoreUnavailableError
from .store import CredentialStore

logger = logging.getLogger("tenant_vault.vault")


async def rotate_credentials(
    store: CredentialStore,
    cipher: CredentialCipher,
    old_key_id: int,
    new_key_id: int,
    audit_log: AuditLog | None = None,
    batch_size: int = 100,
) -> dict:
    """Re-encrypt all credentials from old_key_id to new_key_id in batches.

    Args:
        store: Credential store holding the records.
        cipher: Cipher loaded with both key versions.
        old_key_id: Source key version to rotate from.
        new_key_id: Target key version to rotate to.
        audit_log: When given, each rotated record is audited as
            ``credential.rotated``.
        batch_size: Number of records fetched per batch.

    Returns:
        Stats dict with keys: total, rotated, skipped, errors. A record
        refreshed by another writer while its batch was in flight is
        skipped rather than overwritten.

    Raises:
        KeyError: If old_key_id or new_key_id is not loaded in the cipher.
        StoreUnavailableError: If a batch cannot be fetched.
    """
    if not cipher.has_key_version(old_key_id):
        raise KeyError(
            f"Old key version {old_key_id} not found in master keys"
        )
    if not cipher.has_key_version(new_key_id):
        raise KeyError(
            f"New key version {new_key_id} not found in master keys"
        )

    stats = {"total": 0, "rotated": 0, "skipped": 0, "errors": 0}
    if old_key_id == new_key_id:
        return stats

    failed: set[tuple[str, str]] = set()
    batch_num = 0

    logger.info(
        "Starting key rotation from v%d to v%d (batch_size=%d)",
        old_key_id, new_key_id, batch_size,
    )

    while True:
        rows = await store.list_by_key_version(
            old_key_id, batch_size + len(failed),
        )
        pending = [
            r for r in rows if (r.tenant_id, r.integration_id) not in failed
        ]
        if not pending:
            break

        batch_num += 1
        logger.info(
            "Processing batch %d (%d records)", batch_num, len(pending),
        )

        for record in pending:
            stats["total"] += 1
            pair = (record.tenant_id, record.integration_id)
            try:
                plaintext = cipher.decrypt(
                    record.tenant_id, record.integration_id,
                    record.ciphertext_blob, old_key_id,
                )
                new_blob = cipher.encrypt(
                    record.tenant_id, record.integration_id,
                    plaintext, new_key_id,
                )
                swapped = await store.put_if_unchanged(
                    record.tenant_id, record.integration_id, new_blob,
                    new_key_id, record.ciphertext_blob,
                )
            except (AuthenticationError, StoreUnavailableError) as err:
                logger.error(
                    "Error rotating credential tenant=%s integration=%s: %s",
                    record.tenant_id, record.integration_id, type(err).__name__,
                )
                failed.add(pair)
                stats["errors"] += 1
                continue
            if not swapped:
                # rewritten since the batch was read; picked up again if still old
                stats["skipped"] += 1
                continue
            stats["rotated"] += 1
            if audit_log is not None:
                await audit_log.record(AuditEvent(
                    action=AuditAction.CREDENTIAL_ROTATED,
                    tenant_id=record.tenant_id,
                    integration_id=record.integration_id,
                    actor_user_id="system",
                    details={"from_version": old_key_id, "to_version": new_key_id},
                ))

    logger.info(
        "Key rotation complete: %s", stats,
    )
    return stats
