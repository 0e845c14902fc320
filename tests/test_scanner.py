import math

import pytest

from thunderhead.errors import NetworkError
from thunderhead.geo import great_circle_km
from thunderhead.models import ALL_DIRECTIONS, Coordinate, Direction, SoundingSample, UnknownDirectionResult
from thunderhead.scanner import DirectionalScanner

from conftest import CALM, STORMY, TOKYO, FakeProvider, failing


def by_distance(origin, table, default=CALM):
    """Responder keyed on the rounded distance of a sample point from ``origin``."""
    def respond(c):
        return table.get(round(great_circle_km(origin, c)), default)
    return respond


class TestDirectionalScanner:
    @pytest.mark.asyncio
    async def test_nearest_threat_reported(self, scorer, clock):
        # only the 150 km point is favorable
        provider = FakeProvider(by_distance(TOKYO, {150: STORMY}))
        scanner = DirectionalScanner(provider, scorer=scorer, distances_km=(50, 150, 250), clock=clock)
        res = await scanner.scan(TOKYO, directions=[Direction.NORTH])
        north = res[Direction.NORTH]
        assert north.distance_km == 150
        assert north.assessment.is_likely
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_short_circuits_at_first_hit(self, scorer, clock):
        provider = FakeProvider(lambda c: STORMY)
        scanner = DirectionalScanner(provider, scorer=scorer, distances_km=(50, 160, 250), clock=clock)
        res = await scanner.scan(TOKYO)
        assert set(res) == set(ALL_DIRECTIONS)
        assert all(r.distance_km == 50 for r in res.values())
        assert len(provider.calls) == 4

    @pytest.mark.asyncio
    async def test_clear_reports_farthest_checked(self, scanner, provider):
        res = await scanner.scan(TOKYO)
        for r in res.values():
            assert not r.is_unknown
            assert r.distance_km == 250
            assert not r.assessment.is_likely
        assert len(provider.calls) == 12

    @pytest.mark.asyncio
    async def test_failed_check_is_skipped(self, scorer, clock):
        provider = FakeProvider(by_distance(TOKYO, {250: NetworkError("timeout")}))
        scanner = DirectionalScanner(provider, scorer=scorer, distances_km=(50, 160, 250), clock=clock)
        res = await scanner.scan(TOKYO, directions=[Direction.EAST])
        assert res[Direction.EAST].distance_km == 160

    @pytest.mark.asyncio
    async def test_threat_after_failure(self, scorer, clock):
        provider = FakeProvider(by_distance(TOKYO, {50: NetworkError("timeout"), 160: STORMY}))
        scanner = DirectionalScanner(provider, scorer=scorer, distances_km=(50, 160, 250), clock=clock)
        res = await scanner.scan(TOKYO, directions=[Direction.SOUTH])
        assert res[Direction.SOUTH].distance_km == 160
        assert res[Direction.SOUTH].assessment.is_likely

    @pytest.mark.asyncio
    async def test_all_checks_failed_is_unknown(self, scorer, clock):
        scanner = DirectionalScanner(FakeProvider(failing), scorer=scorer, clock=clock)
        res = await scanner.scan(TOKYO)
        assert len(res) == 4
        for d, r in res.items():
            assert isinstance(r, UnknownDirectionResult)
            assert r.direction is d
            assert "connection refused" in r.reason
            assert r.observed_at == clock.now

    @pytest.mark.asyncio
    async def test_one_bad_direction_does_not_spoil_the_rest(self, scorer, clock):
        def respond(c):
            # westward points have a smaller longitude than the origin
            return NetworkError("boom") if c.longitude < TOKYO.longitude else STORMY
        scanner = DirectionalScanner(FakeProvider(respond), scorer=scorer, clock=clock)
        res = await scanner.scan(TOKYO)
        assert res[Direction.WEST].is_unknown
        assert all(res[d].assessment.is_likely for d in (Direction.NORTH, Direction.EAST, Direction.SOUTH))

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained_to_its_direction(self, scorer, clock):
        def respond(c):
            return RuntimeError("bug") if c.longitude < TOKYO.longitude else STORMY
        scanner = DirectionalScanner(FakeProvider(respond), scorer=scorer, clock=clock)
        res = await scanner.scan(TOKYO)
        assert res[Direction.WEST].is_unknown
        assert "RuntimeError: bug" in res[Direction.WEST].reason
        assert all(res[d].assessment.is_likely for d in (Direction.NORTH, Direction.EAST, Direction.SOUTH))

    @pytest.mark.asyncio
    async def test_unscorable_sample_is_skipped(self, scorer, clock):
        nan = SoundingSample(cape=math.nan, lifted_index=0, convective_inhibition=0, temperature=20)
        provider = FakeProvider(by_distance(TOKYO, {50: nan, 160: STORMY}))
        scanner = DirectionalScanner(provider, scorer=scorer, distances_km=(50, 160, 250), clock=clock)
        res = await scanner.scan(TOKYO, directions=[Direction.NORTH])
        assert res[Direction.NORTH].distance_km == 160

    @pytest.mark.asyncio
    async def test_polar_origin_never_raises(self, scanner):
        res = await scanner.scan(Coordinate(90.0, 0.0))
        assert res[Direction.NORTH].is_unknown
        assert res[Direction.EAST].is_unknown
        assert res[Direction.WEST].is_unknown
        assert not res[Direction.SOUTH].is_unknown

    @pytest.mark.asyncio
    async def test_fan_out_is_bounded(self, scorer, clock):
        provider = FakeProvider()
        scanner = DirectionalScanner(provider, scorer=scorer, max_concurrency=2, clock=clock)
        await scanner.scan(TOKYO)
        assert provider.max_in_flight <= 2

    @pytest.mark.parametrize("distances", [(), (50, 50), (160, 50), (0, 50)])
    def test_rejects_bad_distances(self, provider, distances):
        with pytest.raises(ValueError):
            DirectionalScanner(provider, distances_km=distances)
