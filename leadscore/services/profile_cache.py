"""
Profile cache — cache-aside storage for fetched profiles.

Entries are keyed by subject only and shared across accounts. Nothing is
evicted in the background: freshness is decided at read time from
``cached_at`` and the caller's tier, and stale entries are overwritten on
the next miss.
"""
from __future__ import annotations

import abc
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from leadscore.services.job_types import FreshnessTier, ttl_for_tier

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


@dataclass
class CachedProfile:
    profile: dict[str, Any]
    provider: str
    cached_at: float
    age_seconds: float


class CacheBackend(abc.ABC):
    """Raw key/value storage for serialized cache entries."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]:
        pass

    @abc.abstractmethod
    async def set(self, key: str, value: str) -> None:
        pass

    @abc.abstractmethod
    async def delete(self, key: str) -> None:
        pass


class MemoryCacheBackend(CacheBackend):
    """
    Process-local storage.
    Suitable for development or single-worker deployment.
    """
    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)


class RedisCacheBackend(CacheBackend):
    """Shared storage in Redis, visible to every API and worker process."""
    def __init__(self, client):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)


class ProfileCache:

    def __init__(self, backend: CacheBackend, clock: Callable[[], float] = time.time):
        self.backend = backend
        self.clock = clock

    @staticmethod
    def build_key(subject_id: str) -> str:
        return f"profile:{subject_id.strip().lstrip('@').lower()}:v{CACHE_VERSION}"

    async def get(self, subject_id: str, tier: FreshnessTier) -> Optional[CachedProfile]:
        """Return the cached profile if it is younger than the tier's TTL."""
        key = self.build_key(subject_id)
        try:
            raw = await self.backend.get(key)
        except Exception as e:
            logger.error(f"Cache get error for @{subject_id}: {e}")
            return None

        if raw is None:
            logger.debug(f"Cache miss for @{subject_id}")
            return None

        try:
            entry = json.loads(raw)
            cached_at = float(entry["cached_at"])
            profile = entry["profile"]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable cache entry for @{subject_id}: {e}")
            return None

        age = self.clock() - cached_at
        ttl = ttl_for_tier(tier)
        if age >= ttl:
            logger.info(f"Cache expired for @{subject_id} (age {age / 3600:.1f}h, tier {FreshnessTier(tier).value})")
            return None

        logger.info(f"Cache hit for @{subject_id} (age {age / 3600:.1f}h, remaining {(ttl - age) / 3600:.1f}h)")
        return CachedProfile(
            profile=profile,
            provider=entry.get("provider", "unknown"),
            cached_at=cached_at,
            age_seconds=age,
        )

    async def set(self, subject_id: str, profile: dict[str, Any], provider: str) -> None:
        """Write a fresh fetch. Failures are logged; the fetched data is still usable."""
        entry = {
            "profile": profile,
            "provider": provider,
            "cached_at": self.clock(),
            "version": CACHE_VERSION,
        }
        try:
            await self.backend.set(self.build_key(subject_id), json.dumps(entry, default=str))
            logger.info(f"Cache set for @{subject_id} (provider {provider})")
        except Exception as e:
            logger.error(f"Cache set error for @{subject_id}: {e}")

    async def delete(self, subject_id: str) -> None:
        try:
            await self.backend.delete(self.build_key(subject_id))
        except Exception as e:
            logger.error(f"Cache delete error for @{subject_id}: {e}")
