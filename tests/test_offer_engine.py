import pytest

from vendor_pipeline.schemas.offer import OfferInput
from vendor_pipeline.services.offer_engine import (
    OfferEngine,
    attractiveness_bonus,
    motivation_bonus,
)


def _engine(**overrides) -> OfferEngine:
    params = dict(
        base_percentage=80.0,
        max_percentage=85.0,
        min_profit=30_000,
        rounding_increment=1000,
        flex_percentage=2.0,
    )
    params.update(overrides)
    return OfferEngine(**params)


class TestBonuses:
    @pytest.mark.parametrize(
        "score, expected",
        [(None, 0), (10, 10_000), (9, 10_000), (8, 7_000), (7, 7_000), (5, 3_000), (4, 1_000), (1, 1_000)],
    )
    def test_motivation_bonus_tiers(self, score, expected):
        assert motivation_bonus(score) == expected

    def test_attractiveness_bonus_tiers(self):
        assert attractiveness_bonus(225_000, 300_000) == 5_000  # 0.75
        assert attractiveness_bonus(250_000, 310_000) == 2_000  # ~0.81
        assert attractiveness_bonus(290_000, 310_000) == 0


class TestCalculateOffer:
    def test_worked_example(self):
        """Asking 250k, MV 310k, needs work, motivation 8 -> 212,000."""
        result = _engine().calculate_offer(
            OfferInput(
                asking_price=250_000,
                market_value=310_000,
                refurb_cost=15_000,
                motivation_score=8,
            )
        )
        assert result.offer_amount == 212_000
        assert result.offer_percentage == 84.8
        assert result.profit_potential == 72_400

        breakdown = result.breakdown
        assert breakdown.base_offer == 248_000
        assert breakdown.condition_adjustment == -15_000
        assert breakdown.motivation_bonus == 7_000
        assert breakdown.attractiveness_bonus == 2_000
        assert breakdown.provisional_offer == 242_000
        assert breakdown.max_offer_cap == 212_500
        assert breakdown.cap_applied is True
        assert breakdown.profit_floor_applied is False
        # 212,500 would round up to 213,000, above the cap
        assert breakdown.rounded_down is True

    def test_profit_floor_lowers_offer(self):
        result = _engine(min_profit=50_000).calculate_offer(
            OfferInput(asking_price=200_000, market_value=200_000, refurb_cost=5_000)
        )
        assert result.breakdown.profit_floor_applied is True
        assert result.offer_amount == 138_000
        assert result.profit_potential >= 50_000

    def test_offer_never_negative(self):
        result = _engine().calculate_offer(
            OfferInput(asking_price=15_000, market_value=20_000, refurb_cost=40_000)
        )
        assert result.offer_amount == 0

    def test_offer_is_multiple_of_increment(self):
        result = _engine(rounding_increment=5000).calculate_offer(
            OfferInput(asking_price=180_000, market_value=260_000, refurb_cost=5_000)
        )
        assert result.offer_amount % 5000 == 0

    @pytest.mark.parametrize(
        "asking, market, refurb, motivation",
        [
            (250_000, 310_000, 15_000, 8),
            (100_000, 180_000, 0, 10),
            (300_000, 320_000, 25_000, 3),
            (450_000, 600_000, 40_000, None),
        ],
    )
    def test_offer_within_caps(self, asking, market, refurb, motivation):
        result = _engine().calculate_offer(
            OfferInput(
                asking_price=asking,
                market_value=market,
                refurb_cost=refurb,
                motivation_score=motivation,
            )
        )
        assert 0 <= result.offer_amount <= asking * 0.85
        assert result.offer_amount <= asking
        if result.offer_amount > 0:
            assert result.profit_potential >= 30_000

    def test_same_input_same_offer(self):
        data = OfferInput(asking_price=250_000, market_value=310_000, refurb_cost=15_000)
        engine = _engine()
        assert engine.calculate_offer(data) == engine.calculate_offer(data)


class TestFlexOffer:
    def test_flex_raises_offer_within_cap(self):
        data = OfferInput(asking_price=300_000, market_value=400_000, refurb_cost=5_000)
        result = _engine().calculate_flex_offer(200_000, data)
        assert result.offer_amount == 204_000

    def test_flex_never_decreases_standing_offer(self):
        data = OfferInput(
            asking_price=250_000, market_value=310_000, refurb_cost=15_000, motivation_score=8
        )
        result = _engine().calculate_flex_offer(212_000, data)
        assert result.offer_amount == 212_000
        assert result.offer_amount <= 250_000 * 0.85
