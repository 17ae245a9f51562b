"""Unit tests for the financial impact calculator."""
import pytest

from app.services.financial_impact_service import (
    STATUS_CORE,
    STATUS_HIGH,
    STATUS_NEUTRAL,
    STATUS_RISK,
    STATUS_STARS,
    average_bonus_factor,
    bonus_status,
    calculate_financial_impact,
    exceeds_cfo_threshold,
)

FACTORS = {"STARS": 1.5, "HIGH": 1.25, "CORE": 1.0, "NEUTRAL": 0.85, "RISK": 0.0}


class TestCfoGate:

    def test_six_percent_warns(self):
        impact = calculate_financial_impact(1.00, 1.06)
        assert impact.delta_pct == 6.0
        assert impact.requires_cfo_warning

    def test_exactly_five_percent_does_not_warn(self):
        impact = calculate_financial_impact(1.00, 1.05)
        assert impact.delta_pct == 5.0
        assert not impact.requires_cfo_warning

    def test_negative_variance_warns_on_magnitude(self):
        impact = calculate_financial_impact(1.00, 0.94)
        assert impact.delta_pct == -6.0
        assert impact.requires_cfo_warning

    def test_zero_original_gives_zero_pct(self):
        impact = calculate_financial_impact(0.0, 1.2)
        assert impact.delta_pct == 0.0
        assert impact.delta == 1.2
        assert not impact.requires_cfo_warning

    def test_custom_threshold(self):
        assert calculate_financial_impact(1.0, 1.03, threshold_pct=2.0).requires_cfo_warning

    @pytest.mark.parametrize("pct,expected", [(5.0, False), (5.01, True), (-5.01, True), (0, False)])
    def test_threshold_predicate_is_strict(self, pct, expected):
        assert exceeds_cfo_threshold(pct, 5.0) is expected


class TestBonusFactors:

    @pytest.mark.parametrize(
        "nine_box,status",
        [
            ("star", STATUS_STARS),
            ("high_performer", STATUS_HIGH),
            ("growth_potential", STATUS_HIGH),
            ("potential_gem", STATUS_HIGH),
            ("core_player", STATUS_CORE),
            ("trusted_professional", STATUS_CORE),
            ("underperformer", STATUS_RISK),
            ("inconsistent", STATUS_NEUTRAL),
            (None, STATUS_NEUTRAL),
        ],
    )
    def test_status_groups(self, nine_box, status):
        assert bonus_status(nine_box) == status

    def test_average(self):
        assert average_bonus_factor(["star", "core_player"], FACTORS) == pytest.approx(1.25)

    def test_average_of_nothing_is_zero(self):
        assert average_bonus_factor([], FACTORS) == 0.0
