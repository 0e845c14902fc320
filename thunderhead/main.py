from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from thunderhead import auth, config
from thunderhead.cache import CacheStore, GeoCache, InMemoryCacheStore, RedisCacheStore
from thunderhead.errors import NetworkError, ParseError, UpstreamRejectedError
from thunderhead.jobs import (
    ActiveUserSource,
    CleanupJob,
    InMemoryActiveUserSource,
    PrecacheScheduler,
    QuietHours,
    is_quiet,
    run_periodic,
)
from thunderhead.models import Coordinate, utcnow
from thunderhead.monitoring import Notifier, ThunderMonitor
from thunderhead.providers import AtmosphericProvider, OpenMeteoProvider
from thunderhead.scanner import DirectionalScanner
from thunderhead.scoring import RiskScorer

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"


# ---------- Wiring ----------
@dataclass
class Services:
    provider: AtmosphericProvider
    scorer: RiskScorer
    cache: GeoCache
    users: ActiveUserSource
    quiet_hours: Optional[QuietHours]
    precache: PrecacheScheduler
    cleanup: CleanupJob
    monitor: ThunderMonitor
    clock: Callable[[], datetime] = utcnow

    async def aclose(self) -> None:
        await self.provider.aclose()
        await self.cache.store.aclose()


_FROM_CONFIG = object()


def build_services(
    provider: Optional[AtmosphericProvider] = None,
    store: Optional[CacheStore] = None,
    users: Optional[ActiveUserSource] = None,
    notifier: Optional[Notifier] = None,
    quiet_hours: Any = _FROM_CONFIG,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    provider = provider or OpenMeteoProvider()
    if store is None:
        store = RedisCacheStore() if config.REDIS_URL else InMemoryCacheStore()
    users = users or InMemoryActiveUserSource()
    if quiet_hours is _FROM_CONFIG:
        quiet_hours = QuietHours.from_config()

    scorer = RiskScorer()
    scanner = DirectionalScanner(provider, scorer=scorer, clock=clock)
    cache = GeoCache(scanner, store=store, clock=clock)
    return Services(
        provider=provider,
        scorer=scorer,
        cache=cache,
        users=users,
        quiet_hours=quiet_hours,
        precache=PrecacheScheduler(cache, users, quiet_hours=quiet_hours, clock=clock),
        cleanup=CleanupJob(cache),
        monitor=ThunderMonitor(cache, users, notifier=notifier, quiet_hours=quiet_hours, clock=clock),
        clock=clock,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    svc = getattr(app.state, "services", None) or build_services()
    app.state.services = svc
    tasks = []
    if config.ENABLE_SCHEDULER:
        tasks = [
            asyncio.create_task(run_periodic(svc.precache.run_once, config.PRECACHE_INTERVAL_SECONDS)),
            asyncio.create_task(run_periodic(svc.cleanup.run_once, config.CLEANUP_INTERVAL_SECONDS)),
            asyncio.create_task(run_periodic(svc.monitor.run_once, config.MONITOR_INTERVAL_SECONDS)),
        ]
        logger.info("scheduler started with %d jobs", len(tasks))
    try:
        yield
    finally:
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await svc.aclose()
        app.state.services = None


app = FastAPI(title=config.APP_NAME, version=VERSION, lifespan=lifespan)

# Rate limiting (in-memory)
limiter = Limiter(key_func=get_remote_address, default_limits=[config.RATE_LIMIT])
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

origins = [o.strip() for o in config.CORS_ORIGINS.split(",")] if config.CORS_ORIGINS else ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def _invalid_request(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# ---------- Models ----------
class PointQuery(BaseModel):
    model_config = ConfigDict(extra="forbid")
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


class CacheStatsOut(BaseModel):
    model_config = ConfigDict(extra="forbid")
    totalEntries: int
    validEntries: int
    expiredEntries: int


# ---------- Helpers ----------
def _services(request: Request) -> Services:
    svc = getattr(request.app.state, "services", None)
    if svc is None:
        raise HTTPException(status_code=503, detail="Service not started")
    return svc


def _suppressed(svc: Services) -> Optional[Dict[str, Any]]:
    if is_quiet(svc.quiet_hours, svc.clock()):
        return {"suppressed": True}
    return None


# ---------- Endpoints ----------
@app.get("/health")
def health():
    return {"ok": True, "name": config.APP_NAME, "version": app.version}


@app.post("/v1/weather/point")
@limiter.limit(config.RATE_LIMIT)
async def weather_point(
    request: Request,
    query: PointQuery,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.authenticate(x_api_key, authorization)
    svc = _services(request)
    quiet = _suppressed(svc)
    if quiet:
        return quiet

    coord = query.coordinate()
    try:
        sample = await svc.provider.fetch(coord)
    except NetworkError as e:
        raise HTTPException(status_code=503, detail=f"Provider unavailable: {e}")
    except (ParseError, UpstreamRejectedError) as e:
        raise HTTPException(status_code=502, detail=f"Provider error: {e}")
    try:
        assessment = svc.scorer.score(sample)
    except ValueError as e:
        raise HTTPException(status_code=502, detail=f"Unusable provider data: {e}")
    return {
        "suppressed": False,
        "coordinate": coord.to_dict(),
        "sample": sample.to_dict(),
        "assessment": assessment.to_dict(),
    }


@app.post("/v1/weather/directional")
@limiter.limit(config.RATE_LIMIT)
async def weather_directional(
    request: Request,
    query: PointQuery,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.authenticate(x_api_key, authorization)
    svc = _services(request)
    quiet = _suppressed(svc)
    if quiet:
        return quiet

    coord = query.coordinate()
    results = await svc.cache.get_or_compute(coord)
    return {
        "suppressed": False,
        "grid_key": svc.cache.key_for(coord),
        "directions": {d.value: r.to_record() for d, r in results.items()},
        "likely": [d.value for d, r in results.items() if not r.is_unknown and r.assessment.is_likely],
    }


@app.get("/v1/admin/cache/stats", response_model=CacheStatsOut)
@limiter.limit("30/minute")
async def cache_stats(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.require_admin(x_api_key, authorization)
    stats = await _services(request).cache.stats()
    return CacheStatsOut(**stats.to_dict())


@app.post("/v1/admin/cache/invalidate")
@limiter.limit("30/minute")
async def cache_invalidate(
    request: Request,
    query: PointQuery,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.require_admin(x_api_key, authorization)
    svc = _services(request)
    coord = query.coordinate()
    return {"grid_key": svc.cache.key_for(coord), "deleted": await svc.cache.invalidate(coord)}


@app.post("/v1/admin/jobs/precache")
@limiter.limit("10/minute")
async def run_precache(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.require_admin(x_api_key, authorization)
    return asdict(await _services(request).precache.run_once())


@app.post("/v1/admin/jobs/cleanup")
@limiter.limit("10/minute")
async def run_cleanup(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.require_admin(x_api_key, authorization)
    return asdict(await _services(request).cleanup.run_once())


@app.post("/v1/admin/jobs/monitor")
@limiter.limit("10/minute")
async def run_monitor(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
):
    auth.require_admin(x_api_key, authorization)
    return asdict(await _services(request).monitor.run_once())


@app.post("/v1/token")
@limiter.limit("10/minute")
def issue_token(
    request: Request,
    sub: str,
    role: str = "viewer",
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
):
    # For ops tooling. Protected by API key.
    if not auth.API_KEY or x_api_key != auth.API_KEY:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        token = auth.mint_token(sub=sub, role=role)
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"token": token}
