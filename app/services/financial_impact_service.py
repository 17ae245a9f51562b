"""
Calibra — Financial Impact Calculator

Turns the aggregate bonus multiplier before and after calibration into the
figures shown in the cost phase of the closing protocol:

  delta      = calibrated − original
  delta_pct  = 100 × delta / original        (0 when original is 0)
  warning    = |delta_pct| > threshold       (threshold defaults to 5%)

The warning is informational.  It never blocks a close; the operator's
budget authorization is what gates the next phase.

Bonus multipliers are assigned per nine-box status group:

  star                                              -> STARS
  high_performer / growth_potential / potential_gem -> HIGH
  core_player / trusted_professional                -> CORE
  underperformer                                    -> RISK
  anything else (or unknown)                        -> NEUTRAL
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping

from app.services import classification_service as cls

STATUS_STARS = "STARS"
STATUS_HIGH = "HIGH"
STATUS_CORE = "CORE"
STATUS_RISK = "RISK"
STATUS_NEUTRAL = "NEUTRAL"

_NINE_BOX_STATUS: dict[str, str] = {
    cls.STAR: STATUS_STARS,
    cls.HIGH_PERFORMER: STATUS_HIGH,
    cls.GROWTH_POTENTIAL: STATUS_HIGH,
    cls.POTENTIAL_GEM: STATUS_HIGH,
    cls.CORE_PLAYER: STATUS_CORE,
    cls.TRUSTED_PROFESSIONAL: STATUS_CORE,
    cls.UNDERPERFORMER: STATUS_RISK,
}


def bonus_status(nine_box: str | None) -> str:
    if nine_box is None:
        return STATUS_NEUTRAL
    return _NINE_BOX_STATUS.get(nine_box, STATUS_NEUTRAL)


def bonus_factor(nine_box: str | None, factors: Mapping[str, float]) -> float:
    return factors.get(bonus_status(nine_box), factors.get(STATUS_NEUTRAL, 0.0))


def average_bonus_factor(
    nine_boxes: Iterable[str | None],
    factors: Mapping[str, float],
) -> float:
    values = [bonus_factor(nb, factors) for nb in nine_boxes]
    if not values:
        return 0.0
    return sum(values) / len(values)


def exceeds_cfo_threshold(delta_pct: float, threshold_pct: float) -> bool:
    """True when the variance must be disclosed for CFO approval.

    Strictly greater-than: a variance of exactly the threshold does not warn.
    """
    return abs(delta_pct) > threshold_pct


@dataclass(frozen=True)
class FinancialImpact:
    original_bonus_factor: float
    calibrated_bonus_factor: float
    delta: float
    delta_pct: float
    threshold_pct: float
    requires_cfo_warning: bool

    def as_dict(self) -> dict:
        return {
            "original_bonus_factor": self.original_bonus_factor,
            "calibrated_bonus_factor": self.calibrated_bonus_factor,
            "delta": self.delta,
            "delta_pct": self.delta_pct,
            "threshold_pct": self.threshold_pct,
            "requires_cfo_warning": self.requires_cfo_warning,
        }


def calculate_financial_impact(
    original_bonus_factor: float,
    calibrated_bonus_factor: float,
    threshold_pct: float = 5.0,
) -> FinancialImpact:
    """Compute the cost-phase figures.

    ``delta`` is rounded to 4 decimals and ``delta_pct`` to 2 so that
    binary float noise (1.05 − 1.00 = 0.05000000000000004) cannot push a
    value across the threshold.
    """
    delta = round(calibrated_bonus_factor - original_bonus_factor, 4)
    if original_bonus_factor == 0:
        delta_pct = 0.0
    else:
        delta_pct = round(100 * (calibrated_bonus_factor - original_bonus_factor) / original_bonus_factor, 2)

    return FinancialImpact(
        original_bonus_factor=round(original_bonus_factor, 4),
        calibrated_bonus_factor=round(calibrated_bonus_factor, 4),
        delta=delta,
        delta_pct=delta_pct,
        threshold_pct=threshold_pct,
        requires_cfo_warning=exceeds_cfo_threshold(delta_pct, threshold_pct),
    )
