"""
Tests for the hash-chained audit log.
"""
from datetime import datetime, timezone

import orjson
import pytest
from pydantic import ValidationError

from conftest import FakeConnection, FakePool
from tenant_vault.vault.audit import (
    AUDIT_CHAIN_LOCK_ID,
    GENESIS_HASH,
    AuditAction,
    AuditEvent,
    AuditOutcome,
    MemoryAuditLog,
    PostgresAuditLog,
    verify_chain,
)
from tenant_vault.vault.exceptions import StoreUnavailableError


def _event(action=AuditAction.CREDENTIAL_ACCESSED, **kwargs) -> AuditEvent:
    values = {
        "action": action,
        "tenant_id": "team_1",
        "integration_id": "github",
        "actor_user_id": "user_9",
    }
    values.update(kwargs)
    return AuditEvent(**values)


class TestAuditEvent:
    """Tests for the event model."""

    def test_schema(self):
        """to_dict exposes the public audit schema."""
        event = _event(details={"key_version": 1})
        data = event.to_dict()
        assert set(data) == {
            "action", "tenant_id", "integration_id", "actor_user_id",
            "outcome", "timestamp", "details",
        }
        assert data["action"] == "credential.accessed"
        assert data["outcome"] == "success"
        assert datetime.fromisoformat(data["timestamp"]).tzinfo is not None

    def test_events_are_immutable(self):
        event = _event()
        with pytest.raises(ValidationError):
            event.outcome = AuditOutcome.FAILURE

    def test_integration_optional(self):
        event = _event(action=AuditAction.HANDSHAKE_ISSUED, integration_id=None)
        assert event.to_dict()["integration_id"] is None


class TestMemoryAuditLog:
    """Tests for MemoryAuditLog."""

    async def test_record_seals_chain(self, audit_log):
        first = await audit_log.record(_event())
        second = await audit_log.record(_event(action=AuditAction.CREDENTIAL_DELETED))
        assert first.seq == 1
        assert first.prev_hash == GENESIS_HASH
        assert second.seq == 2
        assert second.prev_hash == first.hash
        assert len(audit_log) == 2
        assert audit_log.verify() is True

    async def test_filter_by_tenant(self, audit_log):
        await audit_log.record(_event())
        await audit_log.record(_event(tenant_id="team_2"))
        assert [e.tenant_id for e in audit_log.events("team_2")] == ["team_2"]

    async def test_mutation_detected(self, audit_log):
        """Editing a stored event breaks the chain."""
        for _ in range(3):
            await audit_log.record(_event())
        events = audit_log.events()
        events[1] = events[1].model_copy(update={"outcome": AuditOutcome.FAILURE})
        assert verify_chain(events) is False

    async def test_removal_detected(self, audit_log):
        for _ in range(3):
            await audit_log.record(_event())
        events = audit_log.events()
        del events[1]
        assert verify_chain(events) is False

    async def test_reorder_detected(self, audit_log):
        for _ in range(3):
            await audit_log.record(_event())
        events = audit_log.events()
        events[0], events[1] = events[1], events[0]
        assert verify_chain(events) is False


class TestPostgresAuditLog:
    """Tests for PostgresAuditLog against a fake asyncpg pool."""

    async def test_first_event(self):
        pool = FakePool(FakeConnection(fetchrow_result=None))
        sealed = await PostgresAuditLog(pool).record(_event(details={"existed": True}))
        assert sealed.seq == 1
        assert sealed.prev_hash == GENESIS_HASH
        method, query, args = pool.conn.calls[-1]
        assert method == "execute"
        assert "INSERT INTO vault.credential_audit" in query
        assert args[0] == 1
        assert args[1] == "credential.accessed"
        assert orjson.loads(args[7]) == {"existed": True}
        assert args[-1] == sealed.hash
        assert pool.conn.log == ["begin", "commit"]

    async def test_chain_head_read_under_lock(self):
        """Writers serialize on an advisory lock before reading the chain head."""
        pool = FakePool(FakeConnection(fetchrow_result=None))
        await PostgresAuditLog(pool).record(_event())
        methods = [call[0] for call in pool.conn.calls]
        assert methods == ["execute", "fetchrow", "execute"]
        method, query, args = pool.conn.calls[0]
        assert "pg_advisory_xact_lock" in query
        assert args == (AUDIT_CHAIN_LOCK_ID,)

    async def test_rolls_back_on_insert_failure(self):
        conn = FakeConnection(fetchrow_result=None)

        async def failing_execute(query, *args):
            conn.calls.append(("execute", query, args))
            if "INSERT" in query:
                raise RuntimeError("unique violation")
            return "SELECT 1"

        conn.execute = failing_execute
        with pytest.raises(StoreUnavailableError):
            await PostgresAuditLog(FakePool(conn)).record(_event())
        assert conn.log == ["begin", "rollback"]

    async def test_continues_chain(self):
        last = {"seq": 4, "hash": "ab" * 32}
        pool = FakePool(FakeConnection(fetchrow_result=last))
        sealed = await PostgresAuditLog(pool).record(_event())
        assert sealed.seq == 5
        assert sealed.prev_hash == "ab" * 32

    async def test_unreachable_sink(self):
        with pytest.raises(StoreUnavailableError) as exc:
            await PostgresAuditLog(FakePool(fail=True)).record(_event())
        assert exc.value.__cause__ is None

    async def test_fetch(self):
        row = {
            "seq": 1,
            "action": "credential.deleted",
            "tenant_id": "team_1",
            "integration_id": "github",
            "actor_user_id": "user_9",
            "outcome": "success",
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
            "details": '{"existed": false}',
            "prev_hash": GENESIS_HASH,
            "hash": "cd" * 32,
        }
        pool = FakePool(FakeConnection(fetch_result=[row]))
        events = await PostgresAuditLog(pool).fetch("team_1", limit=10)
        assert events[0].action is AuditAction.CREDENTIAL_DELETED
        assert events[0].details == {"existed": False}
        assert pool.conn.calls[0][2] == ("team_1", 10)
