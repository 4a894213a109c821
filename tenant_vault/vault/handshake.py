"""
Handshake Tokens — tamper-evident state for OAuth-style connect callbacks.

Token layout (before base64url encoding, no padding):
    {tenant_id}:{user_id}:{issued_at_ms}:{nonce_hex}:{hmac_sha256_hex}

The MAC key is derived from the active master key, so tokens validate
without a database round-trip. Tokens are single-use: ``consume()``
records the nonce in a TTL-bounded ``NonceStore`` and refuses it again
until the nonce would have expired anyway.
"""
import abc
import hmac
import math
import time
import base64
import hashlib
import secrets
import binascii
import logging
from typing import Any, Callable

from pydantic import BaseModel

from .crypto import derive_key
from .exceptions import HandshakeInvalidError

logger = logging.getLogger("tenant_vault.vault")

DEFAULT_MAX_AGE = 600  # 10 minutes
NONCE_BYTES = 16
# tolerated clock skew for tokens stamped slightly in the future
_FUTURE_SKEW_MS = 30_000
_HANDSHAKE_CONTEXT = "vault-handshake"


class HandshakeClaims(BaseModel):
    """Identity carried by a verified handshake token."""

    tenant_id: str
    user_id: str
    issued_at: int  # epoch milliseconds
    nonce: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Consumed nonce tracking
# ---------------------------------------------------------------------------

class NonceStore(abc.ABC):
    """Remembers consumed handshake nonces until their TTL runs out."""

    @abc.abstractmethod
    async def add(self, nonce: str, ttl: int) -> bool:
        """Record a nonce. Returns False if it was already recorded."""

    @abc.abstractmethod
    async def discard(self, nonce: str) -> None:
        """Forget a nonce so its token can be used again."""


class MemoryNonceStore(NonceStore):
    """Process-local nonce store. Expired entries are purged on access."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._expiry: dict[str, float] = {}

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [n for n, exp in self._expiry.items() if exp <= now]
        for nonce in expired:
            del self._expiry[nonce]
        return len(expired)

    async def add(self, nonce: str, ttl: int) -> bool:
        self.purge_expired()
        if nonce in self._expiry:
            return False
        self._expiry[nonce] = self._clock() + ttl
        return True

    async def discard(self, nonce: str) -> None:
        self._expiry.pop(nonce, None)

    def __len__(self) -> int:
        return len(self._expiry)


class RedisNonceStore(NonceStore):
    """Nonce store on a ``redis.asyncio``-compatible client.

    Uses ``SET key 1 NX EX ttl`` so concurrent workers cannot both consume
    the same token.
    """

    def __init__(self, redis: Any, prefix: str = "vault:handshake"):
        self._redis = redis
        self._prefix = prefix

    def _redis_key(self, nonce: str) -> str:
        """Build Redis key."""
        return f"{self._prefix}:{nonce}"

    async def add(self, nonce: str, ttl: int) -> bool:
        result = await self._redis.set(self._redis_key(nonce), 1, nx=True, ex=ttl)
        return bool(result)

    async def discard(self, nonce: str) -> None:
        await self._redis.delete(self._redis_key(nonce))


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------

def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(token: str) -> bytes:
    """Decode unpadded base64url, accepting only the canonical spelling."""
    if not isinstance(token, str):
        raise ValueError("token must be a string")
    padded = token + "=" * (-len(token) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    # unused low bits of the last character must be zero
    if _b64encode(raw) != token:
        raise ValueError("non-canonical encoding")
    return raw


class HandshakeTokenService:
    """Issues and verifies handshake tokens.

    Args:
        master_key: Active master key; only a derived MAC key is kept.
        nonce_store: Where consumed nonces are recorded. Defaults to a
            process-local ``MemoryNonceStore``.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        master_key: bytes,
        nonce_store: NonceStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._mac_key = derive_key(master_key, _HANDSHAKE_CONTEXT)
        self._clock = clock
        self._nonces = nonce_store if nonce_store is not None else MemoryNonceStore(clock)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _sign(self, payload: str) -> str:
        return hmac.new(
            self._mac_key, payload.encode("utf-8"), hashlib.sha256,
        ).hexdigest()

    def issue(self, tenant_id: str, user_id: str) -> str:
        """Issue a URL-safe token for one tenant and user."""
        nonce = secrets.token_hex(NONCE_BYTES)
        payload = f"{tenant_id}:{user_id}:{self._now_ms()}:{nonce}"
        return _b64encode(f"{payload}:{self._sign(payload)}".encode("utf-8"))

    def validate(self, token: str, max_age: int = DEFAULT_MAX_AGE) -> HandshakeClaims:
        """Verify a token's MAC and age without consuming it.

        Raises:
            HandshakeInvalidError: For any failure; the cause is not exposed.
        """
        try:
            decoded = _b64decode(token).decode("utf-8")
        except (binascii.Error, ValueError):
            raise HandshakeInvalidError() from None
        parts = decoded.split(":")
        if len(parts) != 5 or not all(parts):
            raise HandshakeInvalidError()
        tenant_id, user_id, issued_str, nonce, provided_mac = parts
        payload = f"{tenant_id}:{user_id}:{issued_str}:{nonce}"
        expected_mac = self._sign(payload)
        if not hmac.compare_digest(
            provided_mac.encode("ascii", "replace"), expected_mac.encode("ascii"),
        ):
            raise HandshakeInvalidError()
        try:
            issued_at = int(issued_str)
        except ValueError:
            raise HandshakeInvalidError() from None
        age_ms = self._now_ms() - issued_at
        if age_ms > max_age * 1000 or age_ms < -_FUTURE_SKEW_MS:
            raise HandshakeInvalidError()
        return HandshakeClaims(
            tenant_id=tenant_id, user_id=user_id, issued_at=issued_at, nonce=nonce,
        )

    async def consume(self, token: str, max_age: int = DEFAULT_MAX_AGE) -> HandshakeClaims:
        """Validate a token and mark it used.

        A token is honored once; later calls with the same token fail even
        while it is still inside its max age.
        """
        claims = self.validate(token, max_age)
        remaining = claims.issued_at / 1000 + max_age - self._clock()
        ttl = max(1, math.ceil(remaining))
        if not await self._nonces.add(claims.nonce, ttl):
            logger.warning(
                "Handshake token replay for tenant=%s", claims.tenant_id,
            )
            raise HandshakeInvalidError()
        return claims

    async def release(self, claims: HandshakeClaims) -> None:
        """Undo a ``consume``, for when the work the token unlocked failed."""
        await self._nonces.discard(claims.nonce)
