"""
Calibra — Performance classification rules.

Single source of truth for turning numeric scores (1-5 scale) into
performance levels, nine-box levels and nine-box positions.  All rules are
plain typed lookups; nothing here is evaluated from configuration text.

Performance levels (minimum score, inclusive):
  exceptional 4.5 · exceeds_expectations 4.0 · meets_expectations 3.5 ·
  developing 2.5 · needs_improvement 0
Nine-box levels: high >= 4.0 · medium >= 3.0 · low otherwise.
"""

from __future__ import annotations

from typing import Literal

NineBoxLevel = Literal["high", "medium", "low"]

# ── Performance levels ─────────────────────────────────────────────────────

LEVEL_EXCEPTIONAL = "exceptional"
LEVEL_EXCEEDS = "exceeds_expectations"
LEVEL_MEETS = "meets_expectations"
LEVEL_DEVELOPING = "developing"
LEVEL_NEEDS_IMPROVEMENT = "needs_improvement"

PERFORMANCE_THRESHOLDS: list[tuple[float, str]] = [
    (4.5, LEVEL_EXCEPTIONAL),
    (4.0, LEVEL_EXCEEDS),
    (3.5, LEVEL_MEETS),
    (2.5, LEVEL_DEVELOPING),
    (0.0, LEVEL_NEEDS_IMPROVEMENT),
]

PERFORMANCE_LEVELS: frozenset[str] = frozenset(level for _, level in PERFORMANCE_THRESHOLDS)

NINE_BOX_HIGH = 4.0
NINE_BOX_MEDIUM = 3.0

# ── Nine-box positions ─────────────────────────────────────────────────────

STAR = "star"
GROWTH_POTENTIAL = "growth_potential"
POTENTIAL_GEM = "potential_gem"
HIGH_PERFORMER = "high_performer"
CORE_PLAYER = "core_player"
INCONSISTENT = "inconsistent"
TRUSTED_PROFESSIONAL = "trusted_professional"
AVERAGE_PERFORMER = "average_performer"
UNDERPERFORMER = "underperformer"

# (performance level, potential level) -> position
_NINE_BOX_GRID: dict[tuple[NineBoxLevel, NineBoxLevel], str] = {
    ("high", "high"): STAR,
    ("medium", "high"): GROWTH_POTENTIAL,
    ("low", "high"): POTENTIAL_GEM,
    ("high", "medium"): HIGH_PERFORMER,
    ("medium", "medium"): CORE_PLAYER,
    ("low", "medium"): INCONSISTENT,
    ("high", "low"): TRUSTED_PROFESSIONAL,
    ("medium", "low"): AVERAGE_PERFORMER,
    ("low", "low"): UNDERPERFORMER,
}

# ── Adjustment types ───────────────────────────────────────────────────────

ADJUSTMENT_NO_CHANGE = "no_change"
ADJUSTMENT_UPGRADE = "upgrade"
ADJUSTMENT_DOWNGRADE = "downgrade"

_NO_CHANGE_EPSILON = 0.01


def performance_level(score: float) -> str:
    """Return the performance level for a 1-5 score."""
    for minimum, level in PERFORMANCE_THRESHOLDS:
        if score >= minimum:
            return level
    return LEVEL_NEEDS_IMPROVEMENT


def nine_box_level(score: float) -> NineBoxLevel:
    if score >= NINE_BOX_HIGH:
        return "high"
    if score >= NINE_BOX_MEDIUM:
        return "medium"
    return "low"


def nine_box_position(performance_score: float, potential_score: float) -> str:
    """Place an employee on the nine-box grid."""
    key = (nine_box_level(performance_score), nine_box_level(potential_score))
    return _NINE_BOX_GRID.get(key, CORE_PLAYER)


def adjustment_type(original_score: float, new_score: float) -> str:
    if abs(new_score - original_score) < _NO_CHANGE_EPSILON:
        return ADJUSTMENT_NO_CHANGE
    if new_score > original_score:
        return ADJUSTMENT_UPGRADE
    return ADJUSTMENT_DOWNGRADE
