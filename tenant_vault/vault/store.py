"""
Credential Store — persistence boundary for encrypted credential blobs.

The store only ever sees ``nonce || tag || ciphertext`` blobs and their key
version. ``put`` is an upsert keyed by (tenant_id, integration_id); reads
observe the latest write for a pair. ``put_if_unchanged`` is a
compare-and-swap on the stored blob, used when re-encrypting a record that
may have been refreshed since it was read.
"""
import abc
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from .exceptions import StoreUnavailableError

logger = logging.getLogger("tenant_vault.vault")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TenantCredentialRecord(BaseModel):
    """One encrypted credential per (tenant, integration) pair."""

    tenant_id: str
    integration_id: str
    ciphertext_blob: bytes = Field(repr=False)
    key_version: int
    created_at: datetime = Field(default_factory=_utcnow)
    rotated_at: Optional[datetime] = None

    model_config = {"frozen": True}


class CredentialStore(abc.ABC):
    """Keyed storage of encrypted blobs.

    Implementations raise ``StoreUnavailableError`` when the backend
    cannot be reached; they never retry.
    """

    @abc.abstractmethod
    async def put(
        self, tenant_id: str, integration_id: str, blob: bytes, key_version: int,
    ) -> None:
        """Insert or overwrite the record for a pair."""

    @abc.abstractmethod
    async def put_if_unchanged(
        self,
        tenant_id: str,
        integration_id: str,
        blob: bytes,
        key_version: int,
        expected_blob: bytes,
    ) -> bool:
        """Overwrite a record only while it still holds ``expected_blob``.

        Returns False, writing nothing, when the pair is missing or was
        rewritten since it was read.
        """

    @abc.abstractmethod
    async def get(
        self, tenant_id: str, integration_id: str,
    ) -> TenantCredentialRecord | None:
        """Return the record for a pair, or None."""

    @abc.abstractmethod
    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        """Remove the record for a pair. Returns True if one existed."""

    @abc.abstractmethod
    async def list_by_key_version(
        self, key_version: int, limit: int = 100,
    ) -> list[TenantCredentialRecord]:
        """Records still encrypted under ``key_version``."""


class MemoryCredentialStore(CredentialStore):
    """Dict-backed store for tests and single-process deployments."""

    def __init__(self):
        self._records: dict[tuple[str, str], TenantCredentialRecord] = {}
        self._lock = asyncio.Lock()

    async def put(
        self, tenant_id: str, integration_id: str, blob: bytes, key_version: int,
    ) -> None:
        async with self._lock:
            existing = self._records.get((tenant_id, integration_id))
            now = _utcnow()
            self._records[(tenant_id, integration_id)] = TenantCredentialRecord(
                tenant_id=tenant_id,
                integration_id=integration_id,
                ciphertext_blob=blob,
                key_version=key_version,
                created_at=existing.created_at if existing else now,
                rotated_at=now if existing else None,
            )

    async def put_if_unchanged(
        self,
        tenant_id: str,
        integration_id: str,
        blob: bytes,
        key_version: int,
        expected_blob: bytes,
    ) -> bool:
        async with self._lock:
            existing = self._records.get((tenant_id, integration_id))
            if existing is None or existing.ciphertext_blob != expected_blob:
                return False
            self._records[(tenant_id, integration_id)] = existing.model_copy(
                update={
                    "ciphertext_blob": blob,
                    "key_version": key_version,
                    "rotated_at": _utcnow(),
                }
            )
            return True

    async def get(
        self, tenant_id: str, integration_id: str,
    ) -> TenantCredentialRecord | None:
        return self._records.get((tenant_id, integration_id))

    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        async with self._lock:
            return self._records.pop((tenant_id, integration_id), None) is not None

    async def list_by_key_version(
        self, key_version: int, limit: int = 100,
    ) -> list[TenantCredentialRecord]:
        matches = [
            r for r in self._records.values() if r.key_version == key_version
        ]
        return matches[:limit]

    def __len__(self) -> int:
        return len(self._records)


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

_UPSERT_CREDENTIAL = """
INSERT INTO vault.tenant_credentials
    (tenant_id, integration_id, ciphertext_blob, key_version, created_at)
VALUES ($1, $2, $3, $4, NOW())
ON CONFLICT (tenant_id, integration_id)
DO UPDATE SET ciphertext_blob = EXCLUDED.ciphertext_blob,
              key_version = EXCLUDED.key_version,
              rotated_at = NOW()
"""

_REPLACE_CREDENTIAL = """
UPDATE vault.tenant_credentials
SET ciphertext_blob = $3, key_version = $4, rotated_at = NOW()
WHERE tenant_id = $1 AND integration_id = $2 AND ciphertext_blob = $5
"""

_SELECT_CREDENTIAL = """
SELECT tenant_id, integration_id, ciphertext_blob, key_version,
       created_at, rotated_at
FROM vault.tenant_credentials
WHERE tenant_id = $1 AND integration_id = $2
"""

_DELETE_CREDENTIAL = """
DELETE FROM vault.tenant_credentials
WHERE tenant_id = $1 AND integration_id = $2
"""

_SELECT_BY_KEY_VERSION = """
SELECT tenant_id, integration_id, ciphertext_blob, key_version,
       created_at, rotated_at
FROM vault.tenant_credentials
WHERE key_version = $1
ORDER BY tenant_id, integration_id
LIMIT $2
"""


def _record_from_row(row: Any) -> TenantCredentialRecord:
    return TenantCredentialRecord(
        tenant_id=row["tenant_id"],
        integration_id=row["integration_id"],
        ciphertext_blob=bytes(row["ciphertext_blob"]),
        key_version=row["key_version"],
        created_at=row["created_at"],
        rotated_at=row["rotated_at"],
    )


class PostgresCredentialStore(CredentialStore):
    """Store on an asyncpg-compatible connection pool.

    Expects ``vault.tenant_credentials`` with a unique constraint on
    (tenant_id, integration_id).
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def _run(self, method: str, query: str, *args: Any) -> Any:
        try:
            async with self._db.acquire() as conn:
                return await getattr(conn, method)(query, *args)
        except Exception as err:
            logger.error(
                "Credential store %s failed: %s", method, type(err).__name__,
            )
            raise StoreUnavailableError() from None

    async def put(
        self, tenant_id: str, integration_id: str, blob: bytes, key_version: int,
    ) -> None:
        await self._run(
            "execute", _UPSERT_CREDENTIAL,
            tenant_id, integration_id, blob, key_version,
        )

    async def put_if_unchanged(
        self,
        tenant_id: str,
        integration_id: str,
        blob: bytes,
        key_version: int,
        expected_blob: bytes,
    ) -> bool:
        status = await self._run(
            "execute", _REPLACE_CREDENTIAL,
            tenant_id, integration_id, blob, key_version, expected_blob,
        )
        return isinstance(status, str) and not status.endswith(" 0")

    async def get(
        self, tenant_id: str, integration_id: str,
    ) -> TenantCredentialRecord | None:
        row = await self._run(
            "fetchrow", _SELECT_CREDENTIAL, tenant_id, integration_id,
        )
        return _record_from_row(row) if row else None

    async def delete(self, tenant_id: str, integration_id: str) -> bool:
        status = await self._run(
            "execute", _DELETE_CREDENTIAL, tenant_id, integration_id,
        )
        # asyncpg returns the command tag, e.g. "DELETE 1"
        return isinstance(status, str) and not status.endswith(" 0")

    async def list_by_key_version(
        self, key_version: int, limit: int = 100,
    ) -> list[TenantCredentialRecord]:
        rows = await self._run("fetch", _SELECT_BY_KEY_VERSION, key_version, limit)
        return [_record_from_row(row) for row in rows]
