"""
Verification cache for the gateway.

bcrypt verification costs tens of milliseconds per request. The cache
remembers successful verifications for a short TTL, keyed by API key and a
keyed digest of the presented secret. Entries are tagged with the credential
store version they were verified against, so any change to the store
(add, update, rotate, revoke, reload) makes every older entry a miss.
"""

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple

from cachetools import TTLCache

from restgate.core.credentials import Credential
from restgate.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class CachedVerification:
    """
    A remembered successful verification.

    Attributes:
        credential: Credential the secret matched
        store_version: Credential store version at verification time
    """
    credential: Credential
    store_version: int


@dataclass
class VerificationCacheConfig:
    """
    Configuration for VerificationCache.

    Attributes:
        ttl_seconds: Time-to-live for cached entries (default 60s)
        max_size: Maximum number of cached verifications (default 10000)
    """
    ttl_seconds: int = 60
    max_size: int = 10000


@dataclass
class CacheStats:
    """
    Cache statistics for monitoring.

    Attributes:
        hit_count: Total cache hits
        miss_count: Total cache misses
        hit_rate: Percentage of hits (hits / (hits + misses))
        size: Current number of cached entries
        max_size: Maximum cache capacity
        eviction_count: Total evictions due to size limit
        invalidation_count: Entries dropped because the store changed or the cache was cleared
    """
    hit_count: int
    miss_count: int
    hit_rate: float
    size: int
    max_size: int
    eviction_count: int
    invalidation_count: int


class VerificationCache:
    """
    In-memory cache of successful verifications with TTL and LRU eviction.

    Only successes are cached; a wrong secret always pays the full bcrypt
    cost.
    """

    def __init__(self, config: VerificationCacheConfig):
        """
        Initialize VerificationCache with configuration.

        Args:
            config: VerificationCacheConfig with TTL and max size
        """
        self.config = config

        self._cache: TTLCache = TTLCache(
            maxsize=config.max_size,
            ttl=config.ttl_seconds
        )

        self._lock = asyncio.Lock()

        # Per-process key so cached digests are useless outside this process
        self._digest_key = secrets.token_bytes(32)

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._invalidations = 0

        logger.info(
            f"Initialized VerificationCache: ttl={config.ttl_seconds}s, "
            f"max_size={config.max_size}"
        )

    def _cache_key(self, api_key: str, secret: str) -> Tuple[str, bytes]:
        digest = hmac.new(self._digest_key, secret.encode("utf-8"), hashlib.sha256).digest()
        return api_key, digest

    async def get(self, api_key: str, secret: str, store_version: int) -> Optional[Credential]:
        """
        Look up a previous successful verification.

        Args:
            api_key: API key presented
            secret: Secret presented
            store_version: Current credential store version

        Returns:
            The credential if a fresh entry exists for this exact key/secret
            pair and store version, None otherwise
        """
        cache_key = self._cache_key(api_key, secret)
        async with self._lock:
            entry = self._cache.get(cache_key)
            if entry is None:
                self._misses += 1
                return None

            # TTLCache drops expired entries itself; only the version can go stale here
            if entry.store_version != store_version:
                del self._cache[cache_key]
                self._invalidations += 1
                self._misses += 1
                logger.debug(f"Cache entry for key {api_key} is stale")
                return None

            self._hits += 1
            return entry.credential

    async def put(self, api_key: str, secret: str, credential: Credential, store_version: int) -> None:
        """
        Remember a successful verification.

        Args:
            api_key: API key presented
            secret: Secret presented
            credential: Credential it matched
            store_version: Credential store version at verification time
        """
        cache_key = self._cache_key(api_key, secret)
        async with self._lock:
            entry = CachedVerification(credential=credential, store_version=store_version)

            if len(self._cache) >= self.config.max_size and cache_key not in self._cache:
                self._evictions += 1
                logger.debug(
                    f"Cache eviction triggered (size={len(self._cache)}, "
                    f"max={self.config.max_size})"
                )

            self._cache[cache_key] = entry

    async def clear(self) -> None:
        """Clear entire cache."""
        async with self._lock:
            size_before = len(self._cache)
            self._cache.clear()
            self._invalidations += size_before
            logger.info(f"Cleared verification cache ({size_before} entries)")

    def get_stats(self) -> CacheStats:
        """
        Get cache statistics for monitoring.

        Returns:
            CacheStats with hit/miss counts, hit rate, size, evictions, etc.
        """
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0.0

        return CacheStats(
            hit_count=self._hits,
            miss_count=self._misses,
            hit_rate=hit_rate,
            size=len(self._cache),
            max_size=self.config.max_size,
            eviction_count=self._evictions,
            invalidation_count=self._invalidations
        )
