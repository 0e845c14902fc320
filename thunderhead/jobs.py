from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import pytz

from thunderhead import config
from thunderhead.cache import GeoCache
from thunderhead.models import Coordinate, utcnow

logger = logging.getLogger(__name__)


class QuietHours:
    """Local wall-clock window during which alerting work is suppressed.

    ``start_hour`` is inclusive and ``end_hour`` exclusive; a window whose start
    is later than its end wraps past midnight ("20-8" covers 20:00-07:59).
    Equal hours mean the window is empty.
    """

    def __init__(self, start_hour: int, end_hour: int, tz: str = config.QUIET_HOURS_TZ):
        for h in (start_hour, end_hour):
            if not 0 <= h <= 23:
                raise ValueError(f"hour out of range: {h}")
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.tz = pytz.timezone(tz)

    @classmethod
    def from_config(cls) -> Optional["QuietHours"]:
        if config.QUIET_HOURS is None:
            return None
        start, end = config.QUIET_HOURS
        return cls(start, end, config.QUIET_HOURS_TZ)

    def is_active(self, now: datetime) -> bool:
        if now.tzinfo is None:
            now = pytz.UTC.localize(now)
        hour = now.astimezone(self.tz).hour
        if self.start_hour == self.end_hour:
            return False
        if self.start_hour < self.end_hour:
            return self.start_hour <= hour < self.end_hour
        return hour >= self.start_hour or hour < self.end_hour

    def __repr__(self) -> str:
        return f"QuietHours({self.start_hour:02d}-{self.end_hour:02d} {self.tz.zone})"


def is_quiet(quiet_hours: Optional[QuietHours], now: datetime) -> bool:
    return quiet_hours is not None and quiet_hours.is_active(now)


# ---------- Active users (external collaborator) ----------
@dataclass(frozen=True)
class ActiveUser:
    user_id: str
    coordinate: Coordinate
    last_seen: datetime
    notify_token: Optional[str] = None


class ActiveUserSource:
    async def active_users(self, since: datetime) -> Sequence[ActiveUser]:
        """Users whose last known location was reported at or after ``since``."""
        raise NotImplementedError


class InMemoryActiveUserSource(ActiveUserSource):
    def __init__(self, users: Sequence[ActiveUser] = ()):
        self._users: Dict[str, ActiveUser] = {u.user_id: u for u in users}

    def upsert(self, user: ActiveUser) -> None:
        self._users[user.user_id] = user

    def remove(self, user_id: str) -> None:
        self._users.pop(user_id, None)

    async def active_users(self, since: datetime) -> Sequence[ActiveUser]:
        return [u for u in self._users.values() if u.last_seen >= since]


# ---------- Precache ----------
@dataclass(frozen=True)
class PrecacheReport:
    cells: int = 0
    succeeded: int = 0
    failed: int = 0
    unknown_directions: int = 0
    skipped_quiet_hours: bool = False


class PrecacheScheduler:
    """Warms the geo-cache for the cells where active users currently are.

    Users are collapsed onto distinct grid keys first, then cells are computed
    in batches of ``batch_size`` with ``batch_delay`` seconds between batches
    to stay inside upstream rate limits.
    """

    def __init__(
        self,
        cache: GeoCache,
        users: ActiveUserSource,
        quiet_hours: Optional[QuietHours] = None,
        batch_size: int = config.PRECACHE_BATCH_SIZE,
        batch_delay: float = config.PRECACHE_BATCH_DELAY_SECONDS,
        active_window_seconds: int = config.ACTIVE_USER_WINDOW_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.cache = cache
        self.users = users
        self.quiet_hours = quiet_hours
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.active_window = timedelta(seconds=active_window_seconds)
        self._sleep = sleep
        self.clock = clock

    async def distinct_cells(self, now: datetime) -> List[Coordinate]:
        cells: Dict[str, Coordinate] = {}
        for u in await self.users.active_users(now - self.active_window):
            cells.setdefault(self.cache.key_for(u.coordinate), u.coordinate)
        return list(cells.values())

    async def run_once(self) -> PrecacheReport:
        now = self.clock()
        if is_quiet(self.quiet_hours, now):
            logger.info("precache skipped: quiet hours %r", self.quiet_hours)
            return PrecacheReport(skipped_quiet_hours=True)

        cells = await self.distinct_cells(now)
        succeeded = failed = unknown = 0
        for i in range(0, len(cells), self.batch_size):
            if i:
                await self._sleep(self.batch_delay)
            batch = cells[i:i + self.batch_size]
            outcomes = await asyncio.gather(*(self.cache.get_or_compute(c) for c in batch), return_exceptions=True)
            for cell, outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning("precache %s failed: %s", cell, outcome)
                    failed += 1
                    continue
                succeeded += 1
                unknown += sum(1 for r in outcome.values() if r.is_unknown)

        report = PrecacheReport(cells=len(cells), succeeded=succeeded, failed=failed, unknown_directions=unknown)
        logger.info("precache done: %s", report)
        return report


# ---------- Cleanup ----------
@dataclass(frozen=True)
class CleanupReport:
    scanned: int
    deleted: int
    failed: int


class CleanupJob:
    def __init__(
        self,
        cache: GeoCache,
        grace_seconds: int = config.CACHE_GRACE_SECONDS,
        batch_size: int = config.CLEANUP_BATCH_SIZE,
    ):
        self.cache = cache
        self.grace_seconds = grace_seconds
        self.batch_size = batch_size

    async def run_once(self) -> CleanupReport:
        res = await self.cache.purge_expired(grace_seconds=self.grace_seconds, batch_size=self.batch_size)
        report = CleanupReport(scanned=res.scanned, deleted=res.deleted, failed=res.failed)
        logger.info("cleanup done: %s", report)
        return report


async def run_periodic(
    job: Callable[[], Awaitable[object]],
    interval_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    max_runs: Optional[int] = None,
) -> int:
    """Run ``job`` every ``interval_seconds`` until cancelled.

    A failing tick is logged and the loop carries on. Returns the number of
    ticks run when ``max_runs`` is reached.
    """
    runs = 0
    while max_runs is None or runs < max_runs:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("periodic job %s failed", getattr(job, "__qualname__", job))
        runs += 1
        if max_runs is not None and runs >= max_runs:
            break
        await sleep(interval_seconds)
    return runs
