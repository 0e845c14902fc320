from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from dateutil import parser as dtparse


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    dt = dtparse.isoparse(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    def __str__(self) -> str:
        return f"({self.latitude:.4f}, {self.longitude:.4f})"


class Direction(str, Enum):
    NORTH = "north"
    EAST = "east"
    SOUTH = "south"
    WEST = "west"

    @property
    def bearing(self) -> float:
        return _BEARINGS[self]


_BEARINGS = {
    Direction.NORTH: 0.0,
    Direction.EAST: 90.0,
    Direction.SOUTH: 180.0,
    Direction.WEST: 270.0,
}

ALL_DIRECTIONS: Tuple[Direction, ...] = (Direction.NORTH, Direction.EAST, Direction.SOUTH, Direction.WEST)


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class SoundingSample:
    """Atmospheric parameters for one point at the provider's "now" hour.

    ``convective_inhibition`` is the suppression magnitude in J/kg and is never
    negative; providers that report CIN as a signed quantity are normalized by
    the client before a sample is built.
    """
    cape: float
    lifted_index: float
    convective_inhibition: float
    temperature: float
    cloud_cover_low: float = 0.0
    cloud_cover_mid: float = 0.0
    cloud_cover_high: float = 0.0
    timestamp_utc: Optional[datetime] = None

    def __post_init__(self):
        if self.convective_inhibition < 0:
            raise ValueError("convective_inhibition must be a non-negative magnitude")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cape": self.cape,
            "lifted_index": self.lifted_index,
            "convective_inhibition": self.convective_inhibition,
            "temperature": self.temperature,
            "cloud_cover_low": self.cloud_cover_low,
            "cloud_cover_mid": self.cloud_cover_mid,
            "cloud_cover_high": self.cloud_cover_high,
            "timestamp_utc": _iso(self.timestamp_utc) if self.timestamp_utc else None,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "SoundingSample":
        ts = d.get("timestamp_utc")
        return cls(
            cape=float(d["cape"]),
            lifted_index=float(d["lifted_index"]),
            convective_inhibition=float(d["convective_inhibition"]),
            temperature=float(d["temperature"]),
            cloud_cover_low=float(d.get("cloud_cover_low", 0.0)),
            cloud_cover_mid=float(d.get("cloud_cover_mid", 0.0)),
            cloud_cover_high=float(d.get("cloud_cover_high", 0.0)),
            timestamp_utc=_parse_dt(ts) if ts else None,
        )


@dataclass(frozen=True)
class RiskAssessment:
    is_likely: bool
    total_score: float
    risk_level: RiskLevel
    component_scores: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_likely": self.is_likely,
            "total_score": self.total_score,
            "risk_level": self.risk_level.value,
            "component_scores": dict(self.component_scores),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RiskAssessment":
        return cls(
            is_likely=bool(d["is_likely"]),
            total_score=float(d["total_score"]),
            risk_level=RiskLevel(d["risk_level"]),
            component_scores={k: float(v) for k, v in d.get("component_scores", {}).items()},
        )


@dataclass(frozen=True)
class DirectionalResult:
    """Outcome of scanning one direction.

    ``distance_km`` is the nearest distance at which risk was found, or the
    farthest distance successfully checked when none was.
    """
    direction: Direction
    distance_km: float
    coordinate: Coordinate
    sample: SoundingSample
    assessment: RiskAssessment
    observed_at: datetime

    is_unknown = False

    def to_record(self) -> Dict[str, Any]:
        return {
            "status": "known",
            "distance_km": self.distance_km,
            "coordinate": self.coordinate.to_dict(),
            "sample": self.sample.to_dict(),
            "assessment": self.assessment.to_dict(),
            "observed_at": _iso(self.observed_at),
        }


@dataclass(frozen=True)
class UnknownDirectionResult:
    """Every check for a direction failed. This means "don't know", not "no risk"."""
    direction: Direction
    attempted_distances_km: Tuple[float, ...]
    reason: str
    observed_at: datetime

    is_unknown = True

    def to_record(self) -> Dict[str, Any]:
        return {
            "status": "unknown",
            "attempted_distances_km": list(self.attempted_distances_km),
            "reason": self.reason,
            "observed_at": _iso(self.observed_at),
        }


DirectionOutcome = Union[DirectionalResult, UnknownDirectionResult]


def outcome_from_record(direction: Direction, rec: Mapping[str, Any]) -> DirectionOutcome:
    observed_at = _parse_dt(rec["observed_at"])
    if rec.get("status") == "unknown":
        return UnknownDirectionResult(
            direction=direction,
            attempted_distances_km=tuple(float(x) for x in rec.get("attempted_distances_km", [])),
            reason=str(rec.get("reason", "")),
            observed_at=observed_at,
        )
    c = rec["coordinate"]
    return DirectionalResult(
        direction=direction,
        distance_km=float(rec["distance_km"]),
        coordinate=Coordinate(float(c["latitude"]), float(c["longitude"])),
        sample=SoundingSample.from_dict(rec["sample"]),
        assessment=RiskAssessment.from_dict(rec["assessment"]),
        observed_at=observed_at,
    )


@dataclass(frozen=True)
class CacheEntry:
    """One stored scan for a grid cell. Refreshes replace the entry, never mutate it."""
    grid_key: str
    directional_results: Dict[Direction, DirectionOutcome]
    created_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at

    def is_purgeable(self, now: datetime, grace_seconds: float) -> bool:
        return now > self.expires_at + timedelta(seconds=grace_seconds)

    @property
    def all_unknown(self) -> bool:
        return all(r.is_unknown for r in self.directional_results.values())

    def to_record(self) -> Dict[str, Any]:
        return {
            "grid_key": self.grid_key,
            "data": {d.value: r.to_record() for d, r in self.directional_results.items()},
            "timestamp": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_record(cls, rec: Mapping[str, Any]) -> "CacheEntry":
        return cls(
            grid_key=rec["grid_key"],
            directional_results={
                Direction(k): outcome_from_record(Direction(k), v) for k, v in rec["data"].items()
            },
            created_at=_parse_dt(rec["timestamp"]),
            expires_at=_parse_dt(rec["expires_at"]),
        )
