"""
Calibra — Distribution Analyzer

Pure computations over the ratings in a calibration session's scope:

  1. **Buckets** — every score is placed in one of five ordered buckets
     (Low / Developing / Solid / High / Exceptional) and the bucket counts are
     expressed as whole percentages of the population.
  2. **Deviation correction** — the percent reduction in dispersion between
     the original and calibrated bucket percentages:

         correction = max(0, round(100 × (σ_original − σ_calibrated) / σ_original))

     where σ is the population standard deviation over the five bucket
     percentages.  When σ_original is 0 the correction is 0.
  3. **Forced distribution** — when a session declares target percentages per
     performance level, the current distribution must sit within a tolerance
     of each target before the session may close.

The deviation correction is operator evidence only; nothing in the engine
branches on it.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence

BUCKET_LABELS: tuple[str, ...] = ("Low", "Developing", "Solid", "High", "Exceptional")

# Minimum score (inclusive) for buckets 4..1; anything lower lands in bucket 0.
_BUCKET_FLOORS: tuple[tuple[float, int], ...] = (
    (4.5, 4),
    (3.5, 3),
    (2.5, 2),
    (1.5, 1),
)


def round_half_up(value: float) -> int:
    """Round to the nearest integer with .5 going away from zero."""
    if value >= 0:
        return int(math.floor(value + 0.5))
    return -int(math.floor(-value + 0.5))


def std_dev(values: Sequence[float]) -> float:
    """Population standard deviation; 0.0 for an empty sequence."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


def deviation_correction(
    original: Sequence[float],
    calibrated: Sequence[float],
) -> int:
    """Percent reduction in bucket dispersion achieved by calibration.

    Never negative and never NaN: a calibration that widens the spread, or an
    original distribution with zero spread, both yield 0.
    """
    std_original = std_dev(original)
    if std_original == 0:
        return 0
    std_calibrated = std_dev(calibrated)
    return max(0, round_half_up(100 * (std_original - std_calibrated) / std_original))


def score_to_bucket(score: float) -> int:
    for floor, bucket in _BUCKET_FLOORS:
        if score >= floor:
            return bucket
    return 0


def bucket_distribution(scores: Iterable[float]) -> list[int]:
    """Five bucket percentages (rounded half-up) for the given scores."""
    counts = [0] * len(BUCKET_LABELS)
    total = 0
    for score in scores:
        counts[score_to_bucket(score)] += 1
        total += 1
    if total == 0:
        return [0] * len(BUCKET_LABELS)
    return [round_half_up(c / total * 100) for c in counts]


@dataclass(frozen=True)
class DistributionEvidence:
    """Before/after histograms shown in the evidence phase."""

    original: list[int]
    calibrated: list[int]
    population: int
    labels: tuple[str, ...] = BUCKET_LABELS
    std_original: float = field(init=False)
    std_calibrated: float = field(init=False)
    deviation_correction: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "std_original", round(std_dev(self.original), 4))
        object.__setattr__(self, "std_calibrated", round(std_dev(self.calibrated), 4))
        object.__setattr__(
            self, "deviation_correction", deviation_correction(self.original, self.calibrated)
        )

    def as_dict(self) -> dict:
        return {
            "labels": list(self.labels),
            "original": self.original,
            "calibrated": self.calibrated,
            "population": self.population,
            "std_original": self.std_original,
            "std_calibrated": self.std_calibrated,
            "deviation_correction": self.deviation_correction,
        }


def build_distribution_evidence(
    original_scores: Sequence[float],
    calibrated_scores: Sequence[float],
) -> DistributionEvidence:
    return DistributionEvidence(
        original=bucket_distribution(original_scores),
        calibrated=bucket_distribution(calibrated_scores),
        population=len(original_scores),
    )


# ══════════════════════════════════════════════════════════════════════════
# Forced distribution
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ForcedDistributionResult:
    valid: bool
    errors: list[str]
    distribution: dict[str, int]


def targets_sum_to_100(targets: Mapping[str, float], tolerance: float = 0.1) -> bool:
    return abs(sum(targets.values()) - 100) <= tolerance


def validate_forced_distribution(
    levels: Sequence[str],
    targets: Mapping[str, float],
    tolerance_pct: float,
) -> ForcedDistributionResult:
    """Compare the share of each performance level with its target.

    ``levels`` holds one effective performance level per rating in scope.
    An empty population is always valid.
    """
    total = len(levels)
    if total == 0:
        return ForcedDistributionResult(valid=True, errors=[], distribution={})

    counts = Counter(levels)
    distribution = {
        level: round_half_up(count / total * 100) for level, count in counts.items()
    }

    errors: list[str] = []
    for level, target in targets.items():
        current = distribution.get(level, 0)
        if abs(current - target) > tolerance_pct:
            errors.append(
                f"Level {level!r}: {current}% (expected {target}% ±{tolerance_pct}%)"
            )

    return ForcedDistributionResult(
        valid=not errors, errors=errors, distribution=distribution
    )
