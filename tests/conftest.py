from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Union

import pytest

from thunderhead.cache import GeoCache, InMemoryCacheStore
from thunderhead.errors import NetworkError
from thunderhead.models import Coordinate, SoundingSample
from thunderhead.providers import AtmosphericProvider
from thunderhead.scanner import DirectionalScanner
from thunderhead.scoring import RiskScorer, ScorerConfig

TOKYO = Coordinate(35.681, 139.767)

STORMY = SoundingSample(cape=3000, lifted_index=-7, convective_inhibition=5, temperature=32)
CALM = SoundingSample(cape=50, lifted_index=8, convective_inhibition=80, temperature=10)


class FakeClock:
    def __init__(self, start: datetime = datetime(2026, 7, 1, 3, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


Responder = Callable[[Coordinate], Union[SoundingSample, Exception]]


class FakeProvider(AtmosphericProvider):
    """Answers from ``responder``; an Exception return value is raised."""

    name = "fake"

    def __init__(self, responder: Optional[Responder] = None, gate: Optional[asyncio.Event] = None):
        self.responder = responder or (lambda c: CALM)
        self.gate = gate
        self.calls: List[Coordinate] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def fetch(self, coordinate: Coordinate) -> SoundingSample:
        self.calls.append(coordinate)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            out = self.responder(coordinate)
        finally:
            self.in_flight -= 1
        if isinstance(out, Exception):
            raise out
        return out

    async def aclose(self) -> None:
        self.closed = True


def failing(coordinate: Coordinate) -> Exception:
    return NetworkError("connection refused")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scorer() -> RiskScorer:
    return RiskScorer(ScorerConfig.canonical(include_cloud_cover=False))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> InMemoryCacheStore:
    return InMemoryCacheStore()


@pytest.fixture
def scanner(provider, scorer, clock) -> DirectionalScanner:
    return DirectionalScanner(provider, scorer=scorer, distances_km=(50, 160, 250), clock=clock)


@pytest.fixture
def geocache(scanner, store, clock) -> GeoCache:
    return GeoCache(scanner, store=store, ttl_seconds=600, grace_seconds=7200, precision=2, clock=clock)
