import httpx
import pytest
from fastapi.testclient import TestClient

from thunderhead import auth, main
from thunderhead.cache import InMemoryCacheStore
from thunderhead.errors import NetworkError, ParseError
from thunderhead.jobs import QuietHours
from thunderhead.providers import OpenMeteoProvider

from conftest import STORMY, FakeProvider, failing

POINT = {"latitude": 35.681, "longitude": 139.767}
ADMIN = {"X-API-Key": "s3cret"}


async def _no_sleep(seconds):
    pass


@pytest.fixture
def api(monkeypatch, clock):
    monkeypatch.setattr(auth, "API_KEY", "s3cret")
    monkeypatch.setattr(auth, "JWT_SECRET", None)
    main.limiter.reset()

    def start(provider=None, quiet_hours=None):
        svc = main.build_services(
            provider=provider or FakeProvider(),
            store=InMemoryCacheStore(),
            quiet_hours=quiet_hours,
            clock=clock,
        )
        main.app.state.services = svc
        return TestClient(main.app, headers=ADMIN), svc

    return start


def test_health():
    r = TestClient(main.app).get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


class TestWeather:
    def test_directional(self, api):
        client, svc = api(FakeProvider(lambda c: STORMY))
        with client:
            r = client.post("/v1/weather/directional", json=POINT)
        assert r.status_code == 200
        body = r.json()
        assert body["suppressed"] is False
        assert body["grid_key"] == "weather_35.68_139.76"
        assert set(body["directions"]) == {"north", "east", "south", "west"}
        assert body["directions"]["north"]["distance_km"] == 50
        assert sorted(body["likely"]) == ["east", "north", "south", "west"]

    def test_directional_upstream_outage_is_unknown(self, api):
        client, svc = api(FakeProvider(failing))
        with client:
            r = client.post("/v1/weather/directional", json=POINT)
            again = client.post("/v1/weather/directional", json=POINT)
        assert r.status_code == 200
        body = r.json()
        assert {d["status"] for d in body["directions"].values()} == {"unknown"}
        assert body["likely"] == []
        assert again.json()["directions"] == body["directions"]
        assert svc.cache.scan_count == 1

    def test_directional_undecodable_upstream_is_unknown(self, api):
        def handler(request):
            return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"not gzip")

        provider = OpenMeteoProvider(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)), sleep=_no_sleep)
        client, _ = api(provider)
        with client:
            r = client.post("/v1/weather/directional", json=POINT)
        assert r.status_code == 200
        assert {d["status"] for d in r.json()["directions"].values()} == {"unknown"}

    def test_directional_reuses_cache(self, api):
        client, svc = api()
        with client:
            client.post("/v1/weather/directional", json=POINT)
            client.post("/v1/weather/directional", json={"latitude": 35.684, "longitude": 139.764})
        assert svc.cache.scan_count == 1

    def test_point(self, api):
        client, _ = api(FakeProvider(lambda c: STORMY))
        with client:
            r = client.post("/v1/weather/point", json=POINT)
        assert r.status_code == 200
        body = r.json()
        assert body["assessment"]["is_likely"] is True
        assert body["assessment"]["risk_level"] == "high"
        assert body["sample"]["cape"] == 3000

    @pytest.mark.parametrize("error,status", [(NetworkError("timeout"), 503), (ParseError("bad"), 502)])
    def test_point_upstream_errors(self, api, error, status):
        client, _ = api(FakeProvider(lambda c: error))
        with client:
            r = client.post("/v1/weather/point", json=POINT)
        assert r.status_code == status

    @pytest.mark.parametrize("body", [{"latitude": 91, "longitude": 0}, {"latitude": 1}, {**POINT, "extra": 1}])
    def test_invalid_input(self, api, body):
        client, _ = api()
        with client:
            r = client.post("/v1/weather/directional", json=body)
        assert r.status_code == 400

    @pytest.mark.parametrize("path", ["/v1/weather/point", "/v1/weather/directional"])
    def test_quiet_hours_suppress(self, api, path):
        client, svc = api(quiet_hours=QuietHours(0, 23, "UTC"))
        with client:
            r = client.post(path, json=POINT)
        assert r.json() == {"suppressed": True}
        assert svc.cache.scan_count == 0

    def test_weather_needs_api_key_when_configured(self, api):
        client, _ = api()
        with client:
            assert client.post("/v1/weather/point", json=POINT, headers={"X-API-Key": "nope"}).status_code == 401


class TestAdmin:
    def test_stats_requires_key(self, api):
        client, _ = api()
        with client:
            assert client.get("/v1/admin/cache/stats", headers={"X-API-Key": "wrong"}).status_code == 401

    def test_stats(self, api, clock):
        client, _ = api()
        with client:
            client.post("/v1/weather/directional", json=POINT)
            clock.advance(601)
            r = client.get("/v1/admin/cache/stats")
        assert r.json() == {"totalEntries": 1, "validEntries": 0, "expiredEntries": 1}

    def test_jobs(self, api, clock):
        client, svc = api()
        with client:
            client.post("/v1/weather/directional", json=POINT)
            clock.advance(10_000)
            cleanup = client.post("/v1/admin/jobs/cleanup").json()
            precache = client.post("/v1/admin/jobs/precache").json()
            monitor = client.post("/v1/admin/jobs/monitor").json()
        assert cleanup == {"scanned": 1, "deleted": 1, "failed": 0}
        assert precache["cells"] == 0
        assert monitor["checked"] == 0

    def test_invalidate(self, api):
        client, svc = api()
        with client:
            client.post("/v1/weather/directional", json=POINT)
            r = client.post("/v1/admin/cache/invalidate", json=POINT)
        assert r.json() == {"grid_key": "weather_35.68_139.76", "deleted": True}

    def test_bearer_roles(self, api, monkeypatch):
        monkeypatch.setattr(auth, "JWT_SECRET", "jwt-secret-for-tests-only-32bytes!")
        client, _ = api()
        with client:
            admin = client.post("/v1/token", params={"sub": "ops", "role": "admin"}).json()["token"]
            viewer = client.post("/v1/token", params={"sub": "app"}).json()["token"]
            ok = client.get("/v1/admin/cache/stats", headers={"Authorization": f"Bearer {admin}"})
            denied = client.get("/v1/admin/cache/stats", headers={"Authorization": f"Bearer {viewer}"})
            garbage = client.get("/v1/admin/cache/stats", headers={"Authorization": "Bearer abc"})
        assert ok.status_code == 200
        assert denied.status_code == 403
        assert garbage.status_code == 401

    def test_token_requires_api_key(self, api):
        client, _ = api()
        with client:
            assert client.post("/v1/token", params={"sub": "x"}, headers={"X-API-Key": "wrong"}).status_code == 401
