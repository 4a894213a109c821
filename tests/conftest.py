"""Shared fixtures for the credential vault tests."""
import secrets
from contextlib import asynccontextmanager

import pytest

from tenant_vault.vault import (
    CredentialVault,
    MemoryAuditLog,
    MemoryCredentialStore,
    VaultConfig,
)


class FakeClock:
    """Injectable clock returning epoch seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransaction:
    def __init__(self, conn):
        self.conn = conn

    async def start(self):
        self.conn.log.append("begin")

    async def commit(self):
        self.conn.log.append("commit")

    async def rollback(self):
        self.conn.log.append("rollback")


class FakeConnection:
    """Records queries like an asyncpg connection would receive them."""

    def __init__(self, fetchrow_result=None, fetch_result=None, status="INSERT 0 1"):
        self.fetchrow_result = fetchrow_result
        self.fetch_result = fetch_result or []
        self.status = status
        self.calls = []
        self.log = []

    async def execute(self, query, *args):
        self.calls.append(("execute", query, args))
        return self.status

    async def fetchrow(self, query, *args):
        self.calls.append(("fetchrow", query, args))
        return self.fetchrow_result

    async def fetch(self, query, *args):
        self.calls.append(("fetch", query, args))
        return self.fetch_result

    def transaction(self):
        return FakeTransaction(self)


class FakePool:
    """asyncpg-compatible pool handing out a single fake connection."""

    def __init__(self, conn=None, fail=False):
        self.conn = conn or FakeConnection()
        self.fail = fail

    @asynccontextmanager
    async def acquire(self):
        if self.fail:
            raise ConnectionRefusedError("connection refused")
        yield self.conn


@pytest.fixture
def master_key():
    return secrets.token_bytes(32)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(master_key):
    return VaultConfig(master_keys={1: master_key}, active_key_id=1)


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def audit_log():
    return MemoryAuditLog()


@pytest.fixture
def vault(config, store, audit_log, clock):
    return CredentialVault(config, store, audit_log, clock=clock)
