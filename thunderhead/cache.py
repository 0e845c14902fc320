from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import redis
import redis.asyncio as aioredis

from thunderhead import config
from thunderhead.errors import CacheStoreError
from thunderhead.geo import grid_key, quantize
from thunderhead.models import CacheEntry, Coordinate, Direction, DirectionOutcome, utcnow
from thunderhead.scanner import DirectionalScanner

logger = logging.getLogger(__name__)

DirectionalMap = Dict[Direction, DirectionOutcome]


# ---------- Persistence ----------
class CacheStore:
    """One record per grid key: get / set / delete by key and scan-all."""

    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> bool:
        raise NotImplementedError

    def scan(self) -> AsyncIterator[Tuple[str, Optional[CacheEntry]]]:
        """Yield (key, entry) for every record; entry is None if unreadable."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class InMemoryCacheStore(CacheStore):
    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    async def get(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: Optional[int] = None) -> None:
        # expiry is enforced by CleanupJob, not by the dict
        self._entries[key] = entry

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def scan(self) -> AsyncIterator[Tuple[str, Optional[CacheEntry]]]:
        for key, entry in list(self._entries.items()):
            yield key, entry

    def __len__(self) -> int:
        return len(self._entries)


class RedisCacheStore(CacheStore):
    """JSON records in Redis under ``prefix``; scan-all uses SCAN."""

    def __init__(
        self,
        url: Optional[str] = config.REDIS_URL,
        prefix: str = config.REDIS_KEY_PREFIX,
        client: Optional[aioredis.Redis] = None,
    ):
        if client is None:
            if not url:
                raise ValueError("RedisCacheStore needs a url or a client")
            client = aioredis.Redis.from_url(url, decode_responses=True)
        self._client = client
        self.prefix = prefix

    def _k(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _decode(raw: str) -> Optional[CacheEntry]:
        try:
            return CacheEntry.from_record(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("unreadable cache record: %s", e)
            return None

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._client.get(self._k(key))
        except redis.RedisError as e:
            raise CacheStoreError(f"redis get {key}: {e}") from e
        if not raw:
            return None
        return self._decode(raw)

    async def set(self, key: str, entry: CacheEntry, ttl_seconds: Optional[int] = None) -> None:
        payload = json.dumps(entry.to_record(), separators=(",", ":"))
        try:
            await self._client.set(self._k(key), payload, ex=ttl_seconds)
        except redis.RedisError as e:
            raise CacheStoreError(f"redis set {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._k(key)))
        except redis.RedisError as e:
            raise CacheStoreError(f"redis delete {key}: {e}") from e

    async def scan(self) -> AsyncIterator[Tuple[str, Optional[CacheEntry]]]:
        try:
            async for full_key in self._client.scan_iter(match=f"{self.prefix}*"):
                raw = await self._client.get(full_key)
                if raw is None:
                    # deleted between SCAN and GET
                    continue
                yield full_key[len(self.prefix):], self._decode(raw)
        except redis.RedisError as e:
            raise CacheStoreError(f"redis scan: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


# ---------- Update channel ----------
class CacheSubscription:
    """Async iterator over newly stored CacheEntry versions.

    Backed by a bounded queue; when a slow consumer lets it fill up, the
    oldest pending entry is dropped.
    """

    _CLOSED = object()

    def __init__(self, owner: "GeoCache", keys: Optional[Iterable[str]] = None, maxsize: int = 100):
        self._owner = owner
        self.keys = frozenset(keys) if keys is not None else None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def _offer(self, entry: CacheEntry) -> None:
        if self.closed or (self.keys is not None and entry.grid_key not in self.keys):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(entry)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._owner._unsubscribe(self)
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> "CacheSubscription":
        return self

    async def __anext__(self) -> CacheEntry:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "CacheSubscription":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()


# ---------- Geo-cache ----------
@dataclass(frozen=True)
class CacheStats:
    total: int
    valid: int
    expired: int

    def to_dict(self) -> Dict[str, int]:
        return {"totalEntries": self.total, "validEntries": self.valid, "expiredEntries": self.expired}


@dataclass(frozen=True)
class PurgeResult:
    scanned: int
    deleted: int
    failed: int


def _consume_exception(fut: asyncio.Future) -> None:
    # avoid "exception was never retrieved" when every caller has gone away
    if not fut.cancelled():
        fut.exception()


class GeoCache:
    """Grid-quantized cache of directional scans.

    Requests that fall in the same grid cell share one CacheEntry. A miss or
    an expired entry triggers one DirectionalScanner run from the cell centre;
    concurrent callers for the same key join that run instead of starting
    their own (single-flight). Results are stored as a new entry, never merged
    into the old one.

    The run happens in its own task and callers only await it, so a caller
    that is cancelled (e.g. a dropped HTTP request) neither aborts the run nor
    cancels the other callers waiting on it.

    A scan with no data for any direction is not stored. Instead the cell is
    marked as failing for ``failure_backoff_seconds``, and until then callers
    get the same answer without another upstream scan.
    """

    def __init__(
        self,
        scanner: DirectionalScanner,
        store: Optional[CacheStore] = None,
        ttl_seconds: int = config.CACHE_TTL_SECONDS,
        grace_seconds: int = config.CACHE_GRACE_SECONDS,
        precision: int = config.GRID_PRECISION,
        failure_backoff_seconds: int = config.FAILURE_BACKOFF_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.scanner = scanner
        self.store = store if store is not None else InMemoryCacheStore()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.grace_seconds = grace_seconds
        self.precision = precision
        self.failure_backoff = timedelta(seconds=failure_backoff_seconds)
        self.clock = clock
        self.scan_count = 0
        self._inflight: Dict[str, asyncio.Task] = {}
        # grid key -> (retry after, results served until then)
        self._failing: Dict[str, Tuple[datetime, DirectionalMap]] = {}
        self._subscriptions: List[CacheSubscription] = []

    def key_for(self, origin: Coordinate) -> str:
        return grid_key(origin, self.precision)

    async def get_or_compute(self, origin: Coordinate) -> DirectionalMap:
        key = self.key_for(origin)
        task = self._inflight.get(key)
        if task is None:
            # registered before the first await, so same-key callers always join
            task = asyncio.ensure_future(self._lookup(key, origin))
            task.add_done_callback(_consume_exception)
            task.add_done_callback(lambda t: self._release(key, t))
            self._inflight[key] = task
        else:
            logger.debug("joining in-flight lookup for %s", key)
        return dict(await asyncio.shield(task))

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _lookup(self, key: str, origin: Coordinate) -> DirectionalMap:
        prior = await self._read(key)
        now = self.clock()
        if prior is not None and prior.is_valid(now):
            logger.debug("cache hit %s", key)
            return prior.directional_results
        failing = self._failing.get(key)
        if failing is not None:
            retry_after, results = failing
            if now < retry_after:
                logger.debug("%s failing upstream, next scan after %s", key, retry_after.isoformat())
                return results
            del self._failing[key]
        return await self._recompute(key, origin, prior)

    async def _recompute(self, key: str, origin: Coordinate, prior: Optional[CacheEntry]) -> DirectionalMap:
        cell = quantize(origin, self.precision)
        logger.info("cache %s for %s, scanning from %s", "expired" if prior else "miss", key, cell)
        self.scan_count += 1
        fresh = await self.scanner.scan(cell)
        now = self.clock()

        if all(r.is_unknown for r in fresh.values()):
            if prior is not None and not prior.is_purgeable(now, self.grace_seconds):
                logger.warning("scan for %s returned no data; serving entry from %s", key, prior.created_at.isoformat())
                results = prior.directional_results
            else:
                logger.warning("scan for %s returned no data for any direction", key)
                results = fresh
            self._failing[key] = (now + self.failure_backoff, results)
            return results

        results = self._fill_unknown(key, fresh, prior, now)
        self._failing.pop(key, None)
        entry = CacheEntry(grid_key=key, directional_results=results, created_at=now, expires_at=now + self.ttl)
        await self._write(entry)
        self._publish(entry)
        return results

    def _fill_unknown(
        self, key: str, fresh: DirectionalMap, prior: Optional[CacheEntry], now: datetime
    ) -> DirectionalMap:
        """Reuse a prior known result for a direction the new scan could not read,
        provided that result is younger than TTL + grace."""
        if prior is None:
            return fresh
        horizon = self.ttl + timedelta(seconds=self.grace_seconds)
        results = dict(fresh)
        for d, r in fresh.items():
            if not r.is_unknown:
                continue
            old = prior.directional_results.get(d)
            if old is not None and not old.is_unknown and now - old.observed_at <= horizon:
                logger.info("%s %s: keeping result observed at %s", key, d.value, old.observed_at.isoformat())
                results[d] = old
        return results

    async def _read(self, key: str) -> Optional[CacheEntry]:
        try:
            return await self.store.get(key)
        except CacheStoreError as e:
            logger.warning("cache read failed, treating as miss: %s", e)
            return None

    async def _write(self, entry: CacheEntry) -> None:
        ttl = int(self.ttl.total_seconds()) + self.grace_seconds
        try:
            await self.store.set(entry.grid_key, entry, ttl_seconds=ttl)
        except CacheStoreError as e:
            logger.warning("cache write failed for %s: %s", entry.grid_key, e)

    # -- update channel
    def subscribe(self, keys: Optional[Iterable[str]] = None, maxsize: int = 100) -> CacheSubscription:
        sub = CacheSubscription(self, keys=keys, maxsize=maxsize)
        self._subscriptions.append(sub)
        return sub

    def _unsubscribe(self, sub: CacheSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def _publish(self, entry: CacheEntry) -> None:
        for sub in list(self._subscriptions):
            sub._offer(entry)

    # -- maintenance (never on the request path)
    async def stats(self) -> CacheStats:
        now = self.clock()
        total = valid = 0
        async for _, entry in self.store.scan():
            total += 1
            if entry is not None and entry.is_valid(now):
                valid += 1
        return CacheStats(total=total, valid=valid, expired=total - valid)

    async def invalidate(self, origin: Coordinate) -> bool:
        key = self.key_for(origin)
        self._failing.pop(key, None)
        return await self.store.delete(key)

    async def purge_expired(
        self,
        grace_seconds: Optional[int] = None,
        batch_size: int = config.CLEANUP_BATCH_SIZE,
    ) -> PurgeResult:
        """Delete entries past ``expires_at + grace``, and unreadable records.

        Deletes run in batches of ``batch_size``; a failed delete is counted
        and does not stop the rest of the batch.
        """
        grace = self.grace_seconds if grace_seconds is None else grace_seconds
        now = self.clock()
        for key in [k for k, (retry_after, _) in self._failing.items() if now >= retry_after]:
            del self._failing[key]

        scanned = 0
        doomed: List[str] = []
        async for key, entry in self.store.scan():
            scanned += 1
            if entry is None or entry.is_purgeable(now, grace):
                doomed.append(key)

        deleted = failed = 0
        for i in range(0, len(doomed), batch_size):
            batch = doomed[i:i + batch_size]
            outcomes = await asyncio.gather(*(self.store.delete(k) for k in batch), return_exceptions=True)
            for key, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning("failed to delete cache entry %s: %s", key, outcome)
                    failed += 1
                elif outcome:
                    deleted += 1
        return PurgeResult(scanned=scanned, deleted=deleted, failed=failed)
