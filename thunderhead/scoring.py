"""Cumulonimbus risk scoring.

Each factor is mapped to [0, 1] by a monotonic step table and the weighted sum
gives the total score. One canonical configuration is used per deployment:

    CAPE 0.50, lifted index 0.35, CIN 0.05, temperature 0.10, threshold 0.50

When cloud cover is enabled it takes 0.15 and the four base weights are scaled
by 0.85, so active weights always sum to 1.0. ``is_likely`` and the HIGH level
share the same threshold.

CIN is read as a suppression magnitude (J/kg, >= 0): small magnitudes mean
little lid on convection and score higher.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

from thunderhead import config
from thunderhead.models import RiskAssessment, RiskLevel, SoundingSample

CAPE = "cape"
LIFTED_INDEX = "lifted_index"
CIN = "cin"
TEMPERATURE = "temperature"
CLOUD_COVER = "cloud_cover"

BASE_WEIGHTS: Dict[str, float] = {
    CAPE: 0.50,
    LIFTED_INDEX: 0.35,
    CIN: 0.05,
    TEMPERATURE: 0.10,
}
CLOUD_COVER_WEIGHT = 0.15

DECISION_THRESHOLD = 0.5
MEDIUM_THRESHOLD = 0.3
LOW_THRESHOLD = 0.15

# (bound, score) pairs, checked in order. "at least" tables for quantities
# where higher is more unstable, "at most" tables where lower is.
CAPE_STEPS: List[Tuple[float, float]] = [(2500, 1.0), (1000, 0.8), (500, 0.6), (100, 0.3)]
LIFTED_INDEX_STEPS: List[Tuple[float, float]] = [(-6, 1.0), (-3, 0.8), (0, 0.6), (3, 0.4), (6, 0.2)]
CIN_STEPS: List[Tuple[float, float]] = [(10, 0.3), (50, 0.1)]
TEMPERATURE_STEPS: List[Tuple[float, float]] = [(30, 1.0), (25, 0.8), (20, 0.6), (15, 0.4)]
CLOUD_COVER_STEPS: List[Tuple[float, float]] = [(70, 1.0), (50, 0.8), (30, 0.6), (15, 0.3)]


def _at_least(value: float, steps: List[Tuple[float, float]]) -> float:
    for bound, score in steps:
        if value >= bound:
            return score
    return 0.0


def _at_most(value: float, steps: List[Tuple[float, float]]) -> float:
    for bound, score in steps:
        if value <= bound:
            return score
    return 0.0


def cape_score(cape: float) -> float:
    return _at_least(cape, CAPE_STEPS)


def lifted_index_score(li: float) -> float:
    return _at_most(li, LIFTED_INDEX_STEPS)


def cin_score(cin_magnitude: float) -> float:
    return _at_most(cin_magnitude, CIN_STEPS)


def temperature_score(temp_c: float) -> float:
    return _at_least(temp_c, TEMPERATURE_STEPS)


def cloud_cover_score(mid_pct: float, high_pct: float) -> float:
    # mid/high layers carry the towering cloud signal; low cover is ignored
    return _at_least(max(mid_pct, high_pct), CLOUD_COVER_STEPS)


def canonical_weights(include_cloud_cover: bool = False) -> Dict[str, float]:
    if not include_cloud_cover:
        return dict(BASE_WEIGHTS)
    scale = 1.0 - CLOUD_COVER_WEIGHT
    weights = {k: w * scale for k, w in BASE_WEIGHTS.items()}
    weights[CLOUD_COVER] = CLOUD_COVER_WEIGHT
    return weights


@dataclass(frozen=True)
class ScorerConfig:
    weights: Dict[str, float] = field(default_factory=canonical_weights)
    threshold: float = DECISION_THRESHOLD

    def __post_init__(self):
        unknown = set(self.weights) - {CAPE, LIFTED_INDEX, CIN, TEMPERATURE, CLOUD_COVER}
        if unknown:
            raise ValueError(f"unknown scoring factors: {sorted(unknown)}")
        if not math.isclose(sum(self.weights.values()), 1.0, abs_tol=1e-9):
            raise ValueError(f"weights must sum to 1.0, got {sum(self.weights.values())}")
        if not MEDIUM_THRESHOLD < self.threshold <= 1.0:
            raise ValueError(f"threshold must be in ({MEDIUM_THRESHOLD}, 1.0], got {self.threshold}")

    @classmethod
    def canonical(cls, include_cloud_cover: bool = config.ENABLE_CLOUD_COVER) -> "ScorerConfig":
        return cls(weights=canonical_weights(include_cloud_cover))


class RiskScorer:
    """Pure, deterministic mapping from a SoundingSample to a RiskAssessment."""

    def __init__(self, scorer_config: ScorerConfig | None = None):
        self.config = scorer_config or ScorerConfig.canonical()

    def component_scores(self, sample: SoundingSample) -> Dict[str, float]:
        scores = {
            CAPE: cape_score(sample.cape),
            LIFTED_INDEX: lifted_index_score(sample.lifted_index),
            CIN: cin_score(sample.convective_inhibition),
            TEMPERATURE: temperature_score(sample.temperature),
        }
        if CLOUD_COVER in self.config.weights:
            scores[CLOUD_COVER] = cloud_cover_score(sample.cloud_cover_mid, sample.cloud_cover_high)
        return scores

    def level_for(self, total: float) -> RiskLevel:
        if total >= self.config.threshold:
            return RiskLevel.HIGH
        if total >= MEDIUM_THRESHOLD:
            return RiskLevel.MEDIUM
        if total >= LOW_THRESHOLD:
            return RiskLevel.LOW
        return RiskLevel.NONE

    def score(self, sample: SoundingSample) -> RiskAssessment:
        for name in ("cape", "lifted_index", "convective_inhibition", "temperature"):
            if math.isnan(getattr(sample, name)):
                raise ValueError(f"sample field {name} is NaN")
        scores = self.component_scores(sample)
        total = sum(self.config.weights[k] * scores[k] for k in self.config.weights)
        # weights sum to 1 and scores are in [0, 1]; clamp float dust
        total = min(1.0, max(0.0, total))
        return RiskAssessment(
            is_likely=total >= self.config.threshold,
            total_score=total,
            risk_level=self.level_for(total),
            component_scores=scores,
        )
