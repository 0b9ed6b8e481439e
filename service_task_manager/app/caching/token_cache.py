"""
Cache of JWT validation outcomes.

A hit lets the request skip the cryptographic check. Records are stored
under the owning tenant's namespace so a tenant's tokens can be dropped by
pattern on logout or credential rotation; a small pointer key indexed by
token hash maps back to the tenant so lookups never scan.
"""

import hashlib
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

from shared.errors import CircuitOpenError, RetryExhaustedError, StoreError
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from ..domain.models import CacheCategory, ValidatedToken
from ..keystore.store import KeyStore
from .namespace import CacheNamespace

_RECOVERABLE = (StoreError, CircuitOpenError, RetryExhaustedError)

# Claims that identify the tenant, in order of preference
TENANT_CLAIMS = ("tenant_id", "user_id", "sub")

BEARER_PREFIX = "bearer "


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a token, ignoring a leading ``Bearer`` scheme."""
    token = raw_token.strip()
    if token.lower().startswith(BEARER_PREFIX):
        token = token[len(BEARER_PREFIX):].strip()
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tenant_from_claims(claims: Mapping[str, Any]) -> Optional[str]:
    for claim in TENANT_CLAIMS:
        value = claims.get(claim)
        if value not in (None, ""):
            return str(value)
    return None


def claim_timestamp(claims: Mapping[str, Any], name: str) -> Optional[int]:
    """Epoch seconds from a numeric claim, or None when it is missing or malformed."""
    value = claims.get(name)
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


class TokenValidationCache:
    """Caches validated token claims keyed by token hash."""

    def __init__(self,
                 keystore: KeyStore,
                 namespace: CacheNamespace,
                 resilience: ResilienceWrapper,
                 observability: Optional[ObservabilityManager] = None,
                 ttl_seconds: int = 300,
                 safety_margin_seconds: int = 60,
                 clock: Callable[[], float] = time.time,
                 operation_class: str = "cache"):
        self.keystore = keystore
        self.namespace = namespace
        self.resilience = resilience
        self.observability = observability
        self.ttl_seconds = ttl_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.clock = clock
        self.operation_class = operation_class
        self.logger = get_logger("task_manager.cache.token")

    def effective_ttl(self, expires_at: float, now: Optional[float] = None) -> int:
        """TTL a record would get: never longer than the token has left, minus the margin."""
        now = self.clock() if now is None else now
        return min(self.ttl_seconds, int(expires_at - now - self.safety_margin_seconds))

    async def lookup(self, token_hash: str) -> Optional[ValidatedToken]:
        """Cached validation result, or None. Store errors count as a miss."""
        index_key = self.namespace.token_index_key(token_hash)
        try:
            pointer = await self._execute(lambda: self.keystore.get(index_key, strict=True))
            if pointer.value is None:
                self._record_access(hit=False)
                return None

            tenant_id = pointer.value.decode("utf-8")
            record_key = self.namespace.build_key(tenant_id, CacheCategory.TOKEN, token_hash)
            record = await self._execute(lambda: self.keystore.get(record_key, strict=True))
        except _RECOVERABLE as e:
            self._emit("read_degraded", None, error=str(e))
            self._record_access(hit=False)
            return None
        except (UnicodeDecodeError, ValueError) as e:
            # Corrupt pointer, or a tenant id that no longer forms a valid key
            self.logger.warning("Discarding invalid token index entry", error=str(e))
            await self._discard(index_key)
            self._record_access(hit=False)
            return None

        if record.value is None:
            # Record dropped by tenant-wide invalidation; pointer is dangling
            await self._discard(index_key)
            self._record_access(hit=False)
            return None

        try:
            token = ValidatedToken.from_dict(json.loads(record.value))
        except (KeyError, TypeError, ValueError) as e:
            self._emit("invalid_payload", tenant_id, key=record_key, error=str(e))
            await self._discard(record_key, index_key)
            self._record_access(hit=False)
            return None

        if token.is_expired(self.clock()):
            self.logger.info("Evicting expired token record", tenant_id=tenant_id)
            await self._discard(record_key, index_key)
            self._record_access(hit=False)
            return None

        self._record_access(hit=True)
        return token

    async def store(self, token_hash: str, claims: Mapping[str, Any], expires_at: float,
                    tenant_id: Optional[str] = None) -> bool:
        """Cache a validation result. Returns False when nothing was written.

        Tokens too close to expiry to be worth caching are skipped, as are
        tokens whose claims do not name a tenant.
        """
        now = self.clock()
        ttl = self.effective_ttl(expires_at, now)
        if ttl <= 0:
            self.logger.debug("Token too close to expiry to cache", ttl=ttl)
            return False

        tenant_id = tenant_id or tenant_from_claims(claims)
        if tenant_id is None:
            self.logger.warning("Token claims carry no tenant, not caching")
            return False

        issued_at = claim_timestamp(claims, "iat")
        token = ValidatedToken(
            tenant_id=str(tenant_id),
            issued_at=int(now) if issued_at is None else issued_at,
            expires_at=int(expires_at),
            raw_claims=dict(claims),
        )
        record_key = self.namespace.build_key(token.tenant_id, CacheCategory.TOKEN, token_hash)
        index_key = self.namespace.token_index_key(token_hash)
        payload = json.dumps(token.to_dict(), default=str).encode("utf-8")

        try:
            await self._execute(lambda: self.keystore.set(record_key, payload, ttl))
            await self._execute(lambda: self.keystore.set(index_key, token.tenant_id.encode("utf-8"), ttl))
        except _RECOVERABLE as e:
            self._emit("store_failed", token.tenant_id, error=str(e))
            return False

        self.logger.debug("Cached token validation", tenant_id=token.tenant_id, ttl=ttl)
        return True

    async def invalidate(self, token_hash: str) -> bool:
        """Drop one token's record. Errors are logged and swallowed."""
        index_key = self.namespace.token_index_key(token_hash)
        try:
            pointer = await self._execute(lambda: self.keystore.get(index_key, strict=True))
            removed = await self._execute(lambda: self.keystore.delete(index_key))
            if pointer.value is not None:
                record_key = self.namespace.build_key(pointer.value.decode("utf-8"), CacheCategory.TOKEN, token_hash)
                removed += await self._execute(lambda: self.keystore.delete(record_key))
        except _RECOVERABLE as e:
            self._emit("invalidate_failed", None, error=str(e))
            return False
        except (UnicodeDecodeError, ValueError) as e:
            self.logger.warning("Invalid token index entry during invalidation", error=str(e))
            return bool(removed)
        return removed > 0

    async def invalidate_all_for_tenant(self, tenant_id: str) -> int:
        """Drop every cached token of a tenant (logout everywhere, password change)."""
        pattern = self.namespace.build_pattern(tenant_id, CacheCategory.TOKEN)
        try:
            removed = await self._execute(lambda: self.keystore.delete_pattern(pattern), tenant_id)
        except _RECOVERABLE as e:
            self._emit("invalidate_failed", tenant_id, error=str(e))
            return 0
        self.logger.info("Invalidated tenant tokens", tenant_id=tenant_id, removed=removed)
        return int(removed)

    async def stats(self) -> Dict[str, Any]:
        try:
            cached = await self.keystore.count(self.namespace.token_index_pattern())
        except StoreError as e:
            self.logger.warning("Failed to count cached tokens", error=str(e))
            cached = None
        return {
            "cached_tokens": cached,
            "ttl_seconds": self.ttl_seconds,
            "safety_margin_seconds": self.safety_margin_seconds,
        }

    async def _execute(self, thunk, tenant_id: Optional[str] = None):
        return await self.resilience.execute(self.operation_class, thunk, tenant_id=tenant_id)

    async def _discard(self, *keys: str):
        for key in keys:
            try:
                await self.keystore.delete(key)
            except StoreError as e:
                self.logger.warning("Failed to delete token cache entry", key=key, error=str(e))

    def _record_access(self, hit: bool):
        if self.observability:
            self.observability.record_cache_access(CacheCategory.TOKEN.value, hit)

    def _emit(self, outcome: str, tenant_id: Optional[str], **fields: Any):
        if self.observability:
            self.observability.emit_event("token_cache", tenant_id, CacheCategory.TOKEN.value, outcome, **fields)
        else:
            self.logger.warning("Token cache event", tenant_id=tenant_id, outcome=outcome, **fields)
