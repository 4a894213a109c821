"""
Vault Audit Log — append-only, hash-chained record of credential events.

Each event stores the SHA-256 hash of its predecessor, so editing,
dropping or reordering stored rows breaks ``verify_chain``.

Security Note:
    ``details`` is access-controlled separately from API responses and is
    where diagnostic detail goes. Never put key material, plaintext or
    ciphertext in it.
"""
import abc
import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

import orjson
from pydantic import BaseModel, Field

from .exceptions import StoreUnavailableError

logger = logging.getLogger("tenant_vault.audit")

GENESIS_HASH = "0" * 64


class AuditAction(str, Enum):
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_ACCESSED = "credential.accessed"
    CREDENTIAL_DELETED = "credential.deleted"
    CREDENTIAL_ROTATED = "credential.rotated"
    HANDSHAKE_ISSUED = "handshake.issued"
    HANDSHAKE_COMPLETED = "handshake.completed"
    HANDSHAKE_REJECTED = "handshake.rejected"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEvent(BaseModel):
    """One immutable credential lifecycle event."""

    action: AuditAction
    tenant_id: str
    integration_id: Optional[str] = None
    actor_user_id: str
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    timestamp: datetime = Field(default_factory=_utcnow)
    details: dict[str, Any] = Field(default_factory=dict)
    seq: Optional[int] = None
    prev_hash: Optional[str] = None
    hash: Optional[str] = None

    model_config = {"frozen": True}

    def to_dict(self) -> dict[str, Any]:
        """Public audit schema with an ISO-8601 timestamp."""
        return {
            "action": self.action.value,
            "tenant_id": self.tenant_id,
            "integration_id": self.integration_id,
            "actor_user_id": self.actor_user_id,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    def compute_hash(self, seq: int, prev_hash: str) -> str:
        body = self.to_dict()
        body["seq"] = seq
        body["prev_hash"] = prev_hash
        canonical = orjson.dumps(body, option=orjson.OPT_SORT_KEYS)
        return hashlib.sha256(canonical).hexdigest()

    def chained(self, seq: int, prev_hash: str) -> "AuditEvent":
        """Return a copy sealed into the chain after ``prev_hash``."""
        return self.model_copy(update={
            "seq": seq,
            "prev_hash": prev_hash,
            "hash": self.compute_hash(seq, prev_hash),
        })


def verify_chain(events: Iterable[AuditEvent]) -> bool:
    """Check that events form an unbroken chain starting at genesis."""
    prev_hash = GENESIS_HASH
    for expected_seq, event in enumerate(events, start=1):
        if event.seq != expected_seq or event.prev_hash != prev_hash:
            return False
        if event.hash != event.compute_hash(expected_seq, prev_hash):
            return False
        prev_hash = event.hash
    return True


class AuditLog(abc.ABC):
    """Append-only audit sink.

    ``record`` must raise ``StoreUnavailableError`` rather than drop an
    event silently.
    """

    @abc.abstractmethod
    async def record(self, event: AuditEvent) -> AuditEvent:
        """Append an event and return it sealed with its chain fields."""


class MemoryAuditLog(AuditLog):
    """In-process audit log, for tests and single-process deployments."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def record(self, event: AuditEvent) -> AuditEvent:
        async with self._lock:
            prev_hash = self._events[-1].hash if self._events else GENESIS_HASH
            sealed = event.chained(len(self._events) + 1, prev_hash)
            self._events.append(sealed)
        logger.debug(
            "Audit %s tenant=%s integration=%s outcome=%s",
            sealed.action.value, sealed.tenant_id,
            sealed.integration_id, sealed.outcome.value,
        )
        return sealed

    def events(self, tenant_id: str | None = None) -> list[AuditEvent]:
        if tenant_id is None:
            return list(self._events)
        return [e for e in self._events if e.tenant_id == tenant_id]

    def verify(self) -> bool:
        return verify_chain(self._events)

    def __len__(self) -> int:
        return len(self._events)


# ---------------------------------------------------------------------------
# SQL statements
# ---------------------------------------------------------------------------

# Advisory lock key shared by every writer of the chain ("vault" in ASCII).
AUDIT_CHAIN_LOCK_ID = 0x7661756C74

_LOCK_CHAIN = "SELECT pg_advisory_xact_lock($1)"

_SELECT_LAST = """
SELECT seq, hash
FROM vault.credential_audit
ORDER BY seq DESC
LIMIT 1
"""

_INSERT_AUDIT = """
INSERT INTO vault.credential_audit
    (seq, action, tenant_id, integration_id, actor_user_id, outcome,
     created_at, details, prev_hash, hash)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
"""

_SELECT_BY_TENANT = """
SELECT seq, action, tenant_id, integration_id, actor_user_id, outcome,
       created_at, details, prev_hash, hash
FROM vault.credential_audit
WHERE tenant_id = $1
ORDER BY seq DESC
LIMIT $2
"""


class PostgresAuditLog(AuditLog):
    """Audit log on an asyncpg-compatible pool.

    Each append holds a transaction-scoped advisory lock while it reads the
    chain head and inserts the next row, so concurrent writers append in
    sequence, including on an empty table.
    """

    def __init__(self, db_pool: Any):
        self._db = db_pool

    async def record(self, event: AuditEvent) -> AuditEvent:
        try:
            async with self._db.acquire() as conn:
                tx = conn.transaction()
                await tx.start()
                try:
                    await conn.execute(_LOCK_CHAIN, AUDIT_CHAIN_LOCK_ID)
                    last = await conn.fetchrow(_SELECT_LAST)
                    seq = (last["seq"] + 1) if last else 1
                    prev_hash = last["hash"] if last else GENESIS_HASH
                    sealed = event.chained(seq, prev_hash)
                    await conn.execute(
                        _INSERT_AUDIT,
                        sealed.seq, sealed.action.value, sealed.tenant_id,
                        sealed.integration_id, sealed.actor_user_id,
                        sealed.outcome.value, sealed.timestamp,
                        orjson.dumps(sealed.details).decode("utf-8"),
                        sealed.prev_hash, sealed.hash,
                    )
                    await tx.commit()
                except Exception:
                    await tx.rollback()
                    raise
        except Exception as err:
            logger.error(
                "Audit sink unavailable for %s tenant=%s: %s",
                event.action.value, event.tenant_id, type(err).__name__,
            )
            raise StoreUnavailableError() from None
        return sealed

    async def fetch(self, tenant_id: str, limit: int = 50) -> list[AuditEvent]:
        """Most recent events for one tenant, newest first."""
        try:
            async with self._db.acquire() as conn:
                rows = await conn.fetch(_SELECT_BY_TENANT, tenant_id, limit)
        except Exception as err:
            logger.error("Audit fetch failed: %s", type(err).__name__)
            raise StoreUnavailableError() from None
        return [
            AuditEvent(
                action=row["action"],
                tenant_id=row["tenant_id"],
                integration_id=row["integration_id"],
                actor_user_id=row["actor_user_id"],
                outcome=row["outcome"],
                timestamp=row["created_at"],
                details=orjson.loads(row["details"]) if row["details"] else {},
                seq=row["seq"],
                prev_hash=row["prev_hash"],
                hash=row["hash"],
            )
            for row in rows
        ]
