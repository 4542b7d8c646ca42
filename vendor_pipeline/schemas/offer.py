from typing import Optional

from pydantic import BaseModel, Field


class OfferInput(BaseModel):
    """Everything the offer engine needs to price one lead."""

    asking_price: float = Field(..., gt=0)
    market_value: float = Field(..., gt=0)
    refurb_cost: float = Field(0, ge=0)
    motivation_score: Optional[int] = Field(None, ge=1, le=10)
    bedrooms: Optional[int] = None


class OfferBreakdown(BaseModel):
    """Every intermediate value of the pricing rules, kept for audit."""

    base_offer: float
    condition_adjustment: float
    motivation_bonus: float
    attractiveness_bonus: float
    provisional_offer: float
    max_offer_cap: float
    capped_offer: float
    profit_floor_offer: float
    cap_applied: bool
    profit_floor_applied: bool
    rounded_down: bool
    final_offer: float


class OfferCalculation(BaseModel):
    offer_amount: float
    offer_percentage: float  # of asking price
    profit_potential: float
    breakdown: OfferBreakdown
