from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Union

from redis.exceptions import RedisError

from levelup.logging import get_logger
from levelup.service.tokens import token_fingerprint
from levelup.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class BlacklistStore(Protocol):
    def blacklist_token(self, token_fingerprint: str, expires_at: datetime) -> None: ...

    def is_token_blacklisted(self, token_fingerprint: str, now: Optional[datetime] = None) -> bool: ...


class TokenBlacklist:
    """Deny-list of tokens invalidated before their natural expiry.

    Every entry is recorded in the store, and also in Redis (``SET ... EX``)
    when a cache is configured, so an entry survives a later Redis outage.
    """

    def __init__(
        self,
        store: BlacklistStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store = store
        self.cache = cache

    async def add(self, token: str, ttl: timedelta) -> None:
        """Blacklist ``token`` for ``ttl``; callers pass at least its remaining lifetime."""
        fingerprint = token_fingerprint(token)
        # naive UTC to match the store's timestamps
        expires_at = datetime.now(timezone.utc).replace(tzinfo=None) + max(ttl, timedelta(seconds=1))
        self.store.blacklist_token(fingerprint, expires_at)
        if self.cache:
            try:
                await self.cache.blacklist_token(fingerprint, expires_at)
            except (RedisError, OSError) as exc:
                logger.warning("blacklist_cache_write_failed", error=str(exc))

    async def contains(self, token: str, *, fail_closed: bool = True) -> bool:
        """Whether ``token`` is blacklisted.

        When Redis cannot be reached the answer is ``fail_closed``.
        """
        fingerprint = token_fingerprint(token)
        if self.store.is_token_blacklisted(fingerprint):
            return True
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_blacklisted(fingerprint)
        except (RedisError, OSError) as exc:
            logger.warning(
                "blacklist_check_failed", error=str(exc), fail_closed=fail_closed
            )
            return fail_closed
