from typing import List, Optional

from pydantic import BaseModel, Field


class ValidationResult(BaseModel):
    """Outcome of underwriting one lead."""

    passed: bool
    bmv_score: Optional[float] = None
    estimated_market_value: Optional[float] = None
    estimated_refurb_cost: Optional[float] = None
    profit_potential: Optional[float] = None
    reasons: List[str] = Field(default_factory=list)
    validation_notes: str = ""

    @classmethod
    def failed(cls, reason: str, **values) -> "ValidationResult":
        return cls(passed=False, reasons=[reason], validation_notes=reason, **values)
