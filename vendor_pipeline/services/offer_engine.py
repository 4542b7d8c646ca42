"""Deterministic cash-offer pricing.

Pricing rules, in order:

1. base = market value x ``OFFER_BASE_PERCENTAGE`` / 100
2. subtract the estimated refurbishment cost
3. add a motivation bonus and an attractiveness bonus
4. cap at asking x ``OFFER_MAX_PERCENTAGE`` / 100 and at the asking price
5. lower the offer so the deal keeps ``OFFER_MIN_PROFIT`` after
   transaction costs (never below zero)
6. round half-up to ``OFFER_ROUNDING_INCREMENT``, rounding down instead
   whenever rounding up would break the caps of steps 4-5
"""

import logging
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    ATTRACTIVENESS_BONUS_TIERS,
    LOW_MOTIVATION_BONUS,
    MOTIVATION_BONUS_TIERS,
    TRANSACTION_COST_RATE,
)
from vendor_pipeline.schemas.offer import OfferBreakdown, OfferCalculation, OfferInput

logger = logging.getLogger(__name__)

_COST_FACTOR = Decimal(str(1 + TRANSACTION_COST_RATE))


def motivation_bonus(score: Optional[int]) -> int:
    if score is None:
        return 0
    for minimum, bonus in MOTIVATION_BONUS_TIERS:
        if score >= minimum:
            return bonus
    return LOW_MOTIVATION_BONUS


def attractiveness_bonus(asking_price: float, market_value: float) -> int:
    """Bonus for sellers already asking well under market value."""
    ratio = asking_price / market_value
    for max_ratio, bonus in ATTRACTIVENESS_BONUS_TIERS:
        if ratio <= max_ratio:
            return bonus
    return 0


class OfferEngine:
    def __init__(
        self,
        base_percentage: Optional[float] = None,
        max_percentage: Optional[float] = None,
        min_profit: Optional[float] = None,
        rounding_increment: Optional[int] = None,
        flex_percentage: Optional[float] = None,
    ) -> None:
        self.base_percentage = Decimal(str(
            base_percentage if base_percentage is not None else settings.OFFER_BASE_PERCENTAGE
        ))
        self.max_percentage = Decimal(str(
            max_percentage if max_percentage is not None else settings.OFFER_MAX_PERCENTAGE
        ))
        self.min_profit = Decimal(str(
            min_profit if min_profit is not None else settings.OFFER_MIN_PROFIT
        ))
        self.rounding_increment = Decimal(
            rounding_increment if rounding_increment is not None
            else settings.OFFER_ROUNDING_INCREMENT
        )
        self.flex_percentage = Decimal(str(
            flex_percentage if flex_percentage is not None else settings.RETRY_FLEX_PERCENTAGE
        ))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def calculate_offer(self, data: OfferInput) -> OfferCalculation:
        asking = Decimal(str(data.asking_price))
        market = Decimal(str(data.market_value))
        refurb = Decimal(str(data.refurb_cost))

        base = market * self.base_percentage / 100
        adjustment = -refurb
        m_bonus = Decimal(motivation_bonus(data.motivation_score))
        a_bonus = Decimal(attractiveness_bonus(data.asking_price, data.market_value))
        provisional = base + adjustment + m_bonus + a_bonus

        cap, floor_limit = self._limits(asking, market, refurb)
        capped = min(provisional, cap)
        offer = capped
        floor_applied = False
        if market - (offer * _COST_FACTOR + refurb) < self.min_profit:
            offer = floor_limit
            floor_applied = True
        offer = max(offer, Decimal(0))

        final, rounded_down = self._round(offer, min(cap, floor_limit))

        breakdown = OfferBreakdown(
            base_offer=float(round(base, 2)),
            condition_adjustment=float(adjustment),
            motivation_bonus=float(m_bonus),
            attractiveness_bonus=float(a_bonus),
            provisional_offer=float(round(provisional, 2)),
            max_offer_cap=float(round(cap, 2)),
            capped_offer=float(round(capped, 2)),
            profit_floor_offer=float(round(floor_limit, 2)),
            cap_applied=provisional > cap,
            profit_floor_applied=floor_applied,
            rounded_down=rounded_down,
            final_offer=float(final),
        )
        return self._result(final, asking, market, refurb, breakdown)

    def calculate_flex_offer(
        self, current_offer: float, data: OfferInput
    ) -> OfferCalculation:
        """Raise *current_offer* by the flex percentage within the same limits."""
        asking = Decimal(str(data.asking_price))
        market = Decimal(str(data.market_value))
        refurb = Decimal(str(data.refurb_cost))
        current = Decimal(str(current_offer))

        flexed = current * (1 + self.flex_percentage / 100)
        cap, floor_limit = self._limits(asking, market, refurb)
        ceiling = min(cap, floor_limit)
        offer = max(min(flexed, ceiling), Decimal(0))
        final, rounded_down = self._round(offer, ceiling)
        # never go backwards on a standing offer
        if final < current and current <= ceiling:
            final = current

        breakdown = OfferBreakdown(
            base_offer=float(current),
            condition_adjustment=0.0,
            motivation_bonus=0.0,
            attractiveness_bonus=0.0,
            provisional_offer=float(round(flexed, 2)),
            max_offer_cap=float(round(cap, 2)),
            capped_offer=float(round(min(flexed, cap), 2)),
            profit_floor_offer=float(round(floor_limit, 2)),
            cap_applied=flexed > cap,
            profit_floor_applied=flexed > floor_limit,
            rounded_down=rounded_down,
            final_offer=float(final),
        )
        return self._result(final, asking, market, refurb, breakdown)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _limits(
        self, asking: Decimal, market: Decimal, refurb: Decimal
    ) -> Tuple[Decimal, Decimal]:
        """Return (price cap, highest offer that still meets the profit floor)."""
        cap = min(asking * self.max_percentage / 100, asking)
        floor_limit = max((market - refurb - self.min_profit) / _COST_FACTOR, Decimal(0))
        return cap, floor_limit

    def _round(self, offer: Decimal, ceiling: Decimal) -> Tuple[Decimal, bool]:
        step = self.rounding_increment
        rounded = (offer / step).quantize(Decimal(1), rounding=ROUND_HALF_UP) * step
        if rounded > ceiling:
            return (offer / step).quantize(Decimal(1), rounding=ROUND_FLOOR) * step, True
        return rounded, False

    @staticmethod
    def _result(
        final: Decimal,
        asking: Decimal,
        market: Decimal,
        refurb: Decimal,
        breakdown: OfferBreakdown,
    ) -> OfferCalculation:
        profit = market - (final * _COST_FACTOR + refurb)
        return OfferCalculation(
            offer_amount=float(final),
            offer_percentage=float(round(final / asking * 100, 2)),
            profit_potential=float(round(profit, 2)),
            breakdown=breakdown,
        )
