from __future__ import annotations

import asyncio
import logging
import math
from datetime import timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from dateutil import parser as dtparse

from thunderhead import config
from thunderhead.errors import NetworkError, ParseError, UpstreamRejectedError
from thunderhead.models import Coordinate, SoundingSample

logger = logging.getLogger(__name__)

HOURLY_VARIABLES = [
    "cape",
    "lifted_index",
    "convective_inhibition",
    "cloud_cover_low",
    "cloud_cover_mid",
    "cloud_cover_high",
]
CURRENT_VARIABLES = ["temperature_2m"]

# absent values in these series mean "none present", not a broken payload
_ZERO_WHEN_NULL = {"cape", "convective_inhibition", "cloud_cover_low", "cloud_cover_mid", "cloud_cover_high"}


# Provider interface
class AtmosphericProvider:
    name: str

    async def fetch(self, coordinate: Coordinate) -> SoundingSample:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _first_hour(hourly: Dict[str, Any], var: str) -> float:
    series = hourly.get(var)
    if not isinstance(series, list) or not series:
        raise ParseError(f"hourly.{var} missing or empty")
    v = series[0]
    if v is None:
        if var in _ZERO_WHEN_NULL:
            return 0.0
        raise ParseError(f"hourly.{var}[0] is null")
    try:
        v = float(v)
    except (TypeError, ValueError):
        raise ParseError(f"hourly.{var}[0] is not numeric: {v!r}")
    if not math.isfinite(v):
        raise ParseError(f"hourly.{var}[0] is not finite: {v!r}")
    return v


def parse_forecast(payload: Any) -> SoundingSample:
    """Build a SoundingSample from an Open-Meteo forecast payload (index 0 = now)."""
    if not isinstance(payload, dict):
        raise ParseError("payload is not a JSON object")
    hourly = payload.get("hourly")
    current = payload.get("current")
    if not isinstance(hourly, dict) or not isinstance(current, dict):
        raise ParseError("payload missing 'hourly' or 'current'")

    temp = current.get("temperature_2m")
    if temp is None:
        raise ParseError("current.temperature_2m missing")
    try:
        temp = float(temp)
    except (TypeError, ValueError):
        raise ParseError(f"current.temperature_2m is not numeric: {temp!r}")
    if not math.isfinite(temp):
        raise ParseError(f"current.temperature_2m is not finite: {temp!r}")

    ts = None
    t = current.get("time")
    if t:
        try:
            ts = dtparse.isoparse(t)
        except ValueError:
            raise ParseError(f"current.time is not ISO 8601: {t!r}")
        if ts.tzinfo is None:
            # requested with timezone=GMT
            ts = ts.replace(tzinfo=timezone.utc)

    return SoundingSample(
        cape=_first_hour(hourly, "cape"),
        lifted_index=_first_hour(hourly, "lifted_index"),
        # Open-Meteo reports CIN with a sign; keep the magnitude
        convective_inhibition=abs(_first_hour(hourly, "convective_inhibition")),
        temperature=temp,
        cloud_cover_low=_first_hour(hourly, "cloud_cover_low"),
        cloud_cover_mid=_first_hour(hourly, "cloud_cover_mid"),
        cloud_cover_high=_first_hour(hourly, "cloud_cover_high"),
        timestamp_utc=ts,
    )


class OpenMeteoProvider(AtmosphericProvider):
    """Hourly-forecast client for a single point.

    Timeouts, transport errors and 5xx responses are retried up to
    ``max_retries`` more times, attempt n using n * ``timeout`` seconds.
    4xx and malformed payloads fail immediately.
    """

    name = "open-meteo"

    def __init__(
        self,
        base_url: str = config.PROVIDER_URL,
        timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
        max_retries: int = config.PROVIDER_MAX_RETRIES,
        backoff: float = config.PROVIDER_BACKOFF_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"User-Agent": config.USER_AGENT, "Accept": "application/json"},
        )

    @staticmethod
    def params_for(coordinate: Coordinate) -> Dict[str, str]:
        return {
            "latitude": f"{coordinate.latitude:.6f}",
            "longitude": f"{coordinate.longitude:.6f}",
            "hourly": ",".join(HOURLY_VARIABLES),
            "current": ",".join(CURRENT_VARIABLES),
            "timezone": "GMT",
            "forecast_days": "1",
        }

    async def _fetch_once(self, coordinate: Coordinate, timeout: float) -> SoundingSample:
        try:
            r = await self._client.get(self.base_url, params=self.params_for(coordinate), timeout=timeout)
        except httpx.TimeoutException as e:
            raise NetworkError(f"timeout after {timeout:.1f}s: {e}") from e
        except httpx.DecodingError as e:
            raise ParseError(f"undecodable response body: {e}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"transport error: {e}") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"request failed: {e}") from e

        if r.status_code >= 500:
            raise NetworkError(f"provider returned {r.status_code}")
        if r.status_code >= 400:
            raise UpstreamRejectedError(r.status_code, r.text[:200])
        try:
            payload = r.json()
        except ValueError as e:
            raise ParseError(f"response is not JSON: {e}") from e
        return parse_forecast(payload)

    async def fetch(self, coordinate: Coordinate) -> SoundingSample:
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._fetch_once(coordinate, self.timeout * attempt)
            except NetworkError as e:
                logger.warning("fetch %s attempt %d failed, retrying: %s", coordinate, attempt, e)
                await self._sleep(self.backoff * attempt)
        final = self.max_retries + 1
        try:
            return await self._fetch_once(coordinate, self.timeout * final)
        except NetworkError as e:
            logger.warning("fetch %s failed after %d attempts: %s", coordinate, final, e)
            raise

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
