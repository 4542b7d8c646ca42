from typing import Dict, List

from pydantic import BaseModel, Field


class CycleReport(BaseModel):
    """Counts of what one pipeline cycle did, step by step."""

    skipped: bool = False
    intake_created: int = 0
    openers_sent: int = 0
    replies_sent: int = 0
    validated: int = 0
    offers_sent: int = 0
    validation_failed: int = 0
    retries_sent: int = 0
    offers_expired: int = 0
    deals_created: int = 0
    stale_closed: int = 0
    deferred: int = 0
    errors: int = 0
    error_details: List[str] = Field(default_factory=list)

    def record_error(self, step: str, lead_id=None) -> None:
        self.errors += 1
        self.error_details.append(f"{step}:{lead_id}" if lead_id else step)


class ConversionRates(BaseModel):
    """Funnel percentages, rounded to 2 dp."""

    lead_to_offer: float = 0.0
    offer_to_acceptance: float = 0.0
    overall: float = 0.0


class AverageTimes(BaseModel):
    conversation_duration_hours: float = 0.0
    time_to_offer_hours: float = 0.0
    time_to_close_days: float = 0.0


class FinancialSummary(BaseModel):
    total_offers_made: int = 0
    total_accepted_value: int = 0
    avg_bmv_percentage: float = 0.0


class PipelineStatsResponse(BaseModel):
    total: int
    by_stage: Dict[str, int]
    conversion_rates: ConversionRates = Field(default_factory=ConversionRates)
    avg_times: AverageTimes = Field(default_factory=AverageTimes)
    financial: FinancialSummary = Field(default_factory=FinancialSummary)
