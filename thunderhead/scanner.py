from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from thunderhead import config
from thunderhead.errors import ThunderheadError
from thunderhead.geo import project
from thunderhead.models import (
    ALL_DIRECTIONS,
    Coordinate,
    Direction,
    DirectionOutcome,
    DirectionalResult,
    UnknownDirectionResult,
    utcnow,
)
from thunderhead.providers import AtmosphericProvider
from thunderhead.scoring import RiskScorer

logger = logging.getLogger(__name__)


def _validate_distances(distances_km: Iterable[float]) -> Tuple[float, ...]:
    dists = tuple(float(d) for d in distances_km)
    if not dists:
        raise ValueError("at least one scan distance is required")
    if any(d <= 0 for d in dists):
        raise ValueError(f"scan distances must be positive: {dists}")
    if any(b <= a for a, b in zip(dists, dists[1:])):
        raise ValueError(f"scan distances must be strictly ascending: {dists}")
    return dists


class DirectionalScanner:
    """Nearest-threat-first scan of the four compass directions around a point.

    Directions run concurrently (bounded by ``max_concurrency``); distances
    within a direction are checked in ascending order and checking stops at the
    first distance whose assessment is likely. A check that fails after the
    provider's own retries is skipped. A direction where every check failed is
    reported as UnknownDirectionResult, never as "no risk".
    """

    def __init__(
        self,
        provider: AtmosphericProvider,
        scorer: Optional[RiskScorer] = None,
        distances_km: Sequence[float] = tuple(config.CHECK_DISTANCES_KM),
        directions: Sequence[Direction] = ALL_DIRECTIONS,
        max_concurrency: int = config.SCAN_CONCURRENCY,
        clock: Callable[[], datetime] = utcnow,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.provider = provider
        self.scorer = scorer or RiskScorer()
        self.distances_km = _validate_distances(distances_km)
        self.directions = tuple(directions)
        self.max_concurrency = max_concurrency
        self.clock = clock

    async def scan(
        self,
        origin: Coordinate,
        directions: Optional[Sequence[Direction]] = None,
        distances_km: Optional[Sequence[float]] = None,
    ) -> Dict[Direction, DirectionOutcome]:
        dirs = tuple(directions) if directions is not None else self.directions
        dists = _validate_distances(distances_km) if distances_km is not None else self.distances_km
        sem = asyncio.Semaphore(self.max_concurrency)

        async def bounded(direction: Direction) -> DirectionOutcome:
            async with sem:
                return await self.scan_direction(origin, direction, dists)

        outcomes = await asyncio.gather(*(bounded(d) for d in dirs))
        result = dict(zip(dirs, outcomes))
        unknown = [d.value for d, r in result.items() if r.is_unknown]
        if unknown:
            logger.warning("scan %s: no data for %s", origin, ", ".join(unknown))
        return result

    async def scan_direction(
        self,
        origin: Coordinate,
        direction: Direction,
        distances_km: Sequence[float],
    ) -> DirectionOutcome:
        last_clear: Optional[DirectionalResult] = None
        failures: List[str] = []

        for distance in distances_km:
            try:
                point = project(origin, direction, distance)
                sample = await self.provider.fetch(point)
                assessment = self.scorer.score(sample)
            except ThunderheadError as e:
                logger.warning("check %s %gkm from %s skipped: %s", direction.value, distance, origin, e)
                failures.append(f"{distance:g}km: {e}")
                continue
            except Exception as e:
                # one broken check must not fail the sibling directions
                logger.exception("check %s %gkm from %s failed unexpectedly", direction.value, distance, origin)
                failures.append(f"{distance:g}km: {type(e).__name__}: {e}")
                continue

            result = DirectionalResult(
                direction=direction,
                distance_km=distance,
                coordinate=point,
                sample=sample,
                assessment=assessment,
                observed_at=self.clock(),
            )
            if assessment.is_likely:
                logger.debug("risk %s at %gkm from %s (score %.3f)", direction.value, distance, origin, assessment.total_score)
                return result
            last_clear = result

        if last_clear is not None:
            return last_clear
        return UnknownDirectionResult(
            direction=direction,
            attempted_distances_km=tuple(distances_km),
            reason="; ".join(failures),
            observed_at=self.clock(),
        )
