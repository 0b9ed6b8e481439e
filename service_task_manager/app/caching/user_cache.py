"""
Per-user account record cache.

Lets authentication resolve a user's profile and tier without a database
round trip. A user is its own tenant, so each record lives at
``tm:tenant:<user_id>:user:<user_id>`` inside that tenant's key space.
"""

import time
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from shared.errors import CircuitOpenError, RetryExhaustedError, StoreError
from shared.logging import get_logger
from shared.observability import ObservabilityManager
from shared.resilience import ResilienceWrapper
from ..domain.models import CacheCategory, User
from ..keystore.store import KeyStore
from .namespace import CacheNamespace

_RECOVERABLE = (StoreError, CircuitOpenError, RetryExhaustedError)

UserId = Union[int, str]


class UserDataCache:
    """Best-effort cache of user records.

    Reads downgrade store problems to a miss, writes and invalidation log
    and swallow them. Undecodable records are deleted on read.
    """

    def __init__(self,
                 keystore: KeyStore,
                 namespace: CacheNamespace,
                 resilience: ResilienceWrapper,
                 observability: Optional[ObservabilityManager] = None,
                 clock: Callable[[], float] = time.time,
                 operation_class: str = "cache"):
        self.keystore = keystore
        self.namespace = namespace
        self.resilience = resilience
        self.observability = observability
        self.clock = clock
        self.operation_class = operation_class
        self.logger = get_logger("task_manager.cache.user")

    @property
    def ttl_seconds(self) -> int:
        return self.namespace.resolve_ttl(CacheCategory.USER, False)

    def _key(self, user_id: UserId) -> str:
        return self.namespace.build_key(str(user_id), CacheCategory.USER, str(user_id))

    async def get_user(self, user_id: UserId) -> Optional[User]:
        """Cached record, or None on a miss."""
        key = self._key(user_id)
        try:
            result = await self._execute(lambda: self.keystore.get(key, strict=True), user_id)
        except _RECOVERABLE as e:
            self._emit("read_degraded", user_id, key=key, error=str(e))
            self._record_access(hit=False)
            return None

        if result.value is None:
            self._record_access(hit=False)
            return None

        try:
            user = User.model_validate_json(result.value)
        except ValidationError as e:
            self._emit("invalid_payload", user_id, key=key, error=str(e))
            await self._discard(key)
            self._record_access(hit=False)
            return None

        self._record_access(hit=True)
        return user

    async def store_user(self, user: User, ttl: Optional[int] = None) -> bool:
        """Cache a user record. Returns False when nothing was written."""
        ttl = self.ttl_seconds if ttl is None else ttl
        if ttl < 1:
            raise ValueError(f"Cache TTL must be at least 1 second, got {ttl}")

        record = user.model_copy(update={"cached_at": int(self.clock())})
        key = self._key(user.id)
        payload = record.model_dump_json().encode("utf-8")
        try:
            await self._execute(lambda: self.keystore.set(key, payload, ttl), user.id)
        except _RECOVERABLE as e:
            self._emit("store_failed", user.id, key=key, error=str(e))
            return False

        self.logger.debug("Cached user", user_id=user.id, ttl=ttl)
        return True

    async def warm_up_user(self, user: User) -> bool:
        """Pre-load a record, e.g. right after login or registration."""
        stored = await self.store_user(user)
        if stored:
            self.logger.info("Warmed user cache", user_id=user.id)
        return stored

    async def has_user(self, user_id: UserId) -> bool:
        result = await self.keystore.exists(self._key(user_id))
        return bool(result.value)

    async def invalidate_user(self, user_id: UserId) -> bool:
        """Drop a user's record after a profile or tier change."""
        key = self._key(user_id)
        try:
            removed = await self._execute(lambda: self.keystore.delete(key), user_id)
        except _RECOVERABLE as e:
            self._emit("invalidate_failed", user_id, key=key, error=str(e))
            return False
        return removed > 0

    async def stats(self) -> Dict[str, Any]:
        try:
            cached = await self.keystore.count(self.namespace.category_pattern(CacheCategory.USER))
        except StoreError as e:
            self.logger.warning("Failed to count cached users", error=str(e))
            cached = None
        return {"cached_users": cached, "ttl_seconds": self.ttl_seconds}

    async def _execute(self, thunk, user_id: UserId):
        return await self.resilience.execute(self.operation_class, thunk, tenant_id=str(user_id))

    async def _discard(self, key: str):
        try:
            await self.keystore.delete(key)
        except StoreError as e:
            self.logger.warning("Failed to delete undecodable user record", key=key, error=str(e))

    def _record_access(self, hit: bool):
        if self.observability:
            self.observability.record_cache_access(CacheCategory.USER.value, hit)

    def _emit(self, outcome: str, user_id: UserId, **fields: Any):
        if self.observability:
            self.observability.emit_event("user_cache", str(user_id), CacheCategory.USER.value, outcome, **fields)
        else:
            self.logger.warning("User cache event", user_id=user_id, outcome=outcome, **fields)
