import logging
from typing import Optional

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    DEFAULT_VALUATION_BATHROOMS,
    DEFAULT_VALUATION_BEDROOMS,
    DEFAULT_VALUATION_PROPERTY_TYPE,
    EXCLUDED_PROPERTY_TYPES,
    REFURB_BASE_COSTS,
    REFURB_UNKNOWN_CONDITION_COST,
    SQ_FEET_PER_SQ_METRE,
    SQ_METRES_PER_BEDROOM,
    TRANSACTION_COST_RATE,
    bedroom_refurb_multiplier,
    property_type_refurb_multiplier,
)
from vendor_pipeline.core.formatting import extract_postcode, format_gbp
from vendor_pipeline.integrations.valuation import ValuationLookup
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import PropertyCondition
from vendor_pipeline.schemas.validation import ValidationResult

logger = logging.getLogger(__name__)


def estimate_refurb_cost(
    condition: Optional[str],
    bedrooms: Optional[int] = None,
    property_type: Optional[str] = None,
) -> float:
    try:
        base = REFURB_BASE_COSTS[PropertyCondition(condition)]
    except ValueError:
        base = REFURB_UNKNOWN_CONDITION_COST
    cost = (
        base
        * bedroom_refurb_multiplier(bedrooms)
        * property_type_refurb_multiplier(property_type)
    )
    return round(cost, 2)


def calculate_bmv(market_value: float, asking_price: float) -> float:
    """Percentage below market value (negative when asking exceeds market)."""
    return round((market_value - asking_price) / market_value * 100, 2)


def calculate_profit(market_value: float, asking_price: float, refurb_cost: float) -> float:
    costs = asking_price + refurb_cost + asking_price * TRANSACTION_COST_RATE
    return round(market_value - costs, 2)


class DealValidator:
    """Underwrites a lead: market value, BMV, refurb and profit checks.

    A lookup that cannot be reached raises ``CollaboratorUnavailableError``
    untouched, so the orchestrator can retry the lead next cycle.
    Missing data fails validation with a note instead.
    """

    def __init__(
        self,
        valuation: ValuationLookup,
        min_bmv_percentage: Optional[float] = None,
        max_asking_price: Optional[float] = None,
        min_profit_potential: Optional[float] = None,
    ) -> None:
        self._valuation = valuation
        self.min_bmv_percentage = (
            min_bmv_percentage if min_bmv_percentage is not None
            else settings.MIN_BMV_PERCENTAGE
        )
        self.max_asking_price = (
            max_asking_price if max_asking_price is not None else settings.MAX_ASKING_PRICE
        )
        self.min_profit_potential = (
            min_profit_potential if min_profit_potential is not None
            else settings.MIN_PROFIT_POTENTIAL
        )

    async def validate(self, lead: VendorLead) -> ValidationResult:
        if not lead.property_address or lead.asking_price is None:
            return ValidationResult.failed("Missing property address or asking price")

        postcode = lead.property_postcode or extract_postcode(lead.property_address)
        if not postcode:
            return ValidationResult.failed("Could not determine postcode from address")

        asking = float(lead.asking_price)
        property_type = (lead.property_type or DEFAULT_VALUATION_PROPERTY_TYPE).lower()
        bedrooms = lead.bedrooms or DEFAULT_VALUATION_BEDROOMS
        area = lead.square_feet or round(
            bedrooms * SQ_METRES_PER_BEDROOM * SQ_FEET_PER_SQ_METRE
        )

        market_value = await self._valuation.estimate(
            postcode=postcode,
            property_type=property_type,
            area_sq_ft=area,
            bedrooms=bedrooms,
            bathrooms=lead.bathrooms or DEFAULT_VALUATION_BATHROOMS,
        )
        if not market_value:
            return ValidationResult.failed(
                f"Could not fetch market valuation for {postcode}"
            )

        return self.evaluate(
            asking_price=asking,
            market_value=market_value,
            condition=lead.condition,
            bedrooms=lead.bedrooms,
            property_type=lead.property_type,
        )

    def evaluate(
        self,
        asking_price: float,
        market_value: float,
        condition: Optional[str],
        bedrooms: Optional[int] = None,
        property_type: Optional[str] = None,
    ) -> ValidationResult:
        """Apply the thresholds to known figures; no I/O."""
        bmv = calculate_bmv(market_value, asking_price)
        refurb = estimate_refurb_cost(condition, bedrooms, property_type)
        profit = calculate_profit(market_value, asking_price, refurb)

        reasons = []
        if bmv < self.min_bmv_percentage:
            reasons.append(
                f"BMV {bmv:.1f}% is below minimum {self.min_bmv_percentage:g}%"
            )
        if profit < self.min_profit_potential:
            reasons.append(
                f"Profit potential {format_gbp(profit)} is below minimum "
                f"{format_gbp(self.min_profit_potential)}"
            )
        if asking_price > self.max_asking_price:
            reasons.append(
                f"Asking price {format_gbp(asking_price)} exceeds maximum "
                f"{format_gbp(self.max_asking_price)}"
            )
        if property_type and property_type.strip().lower() in EXCLUDED_PROPERTY_TYPES:
            reasons.append(f"Property type '{property_type}' is not purchased")

        passed = not reasons
        return ValidationResult(
            passed=passed,
            bmv_score=bmv,
            estimated_market_value=market_value,
            estimated_refurb_cost=refurb,
            profit_potential=profit,
            reasons=reasons,
            validation_notes="; ".join(reasons) if reasons else "Deal validated successfully",
        )
