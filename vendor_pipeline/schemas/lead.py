"""Vendor lead request/response schemas for the operator API."""

from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from vendor_pipeline.core.formatting import normalize_uk_phone
from vendor_pipeline.schemas.common import (
    PipelineStage,
    PropertyCondition,
    SuccessResponse,
)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class VendorLeadCreate(BaseModel):
    """Request body for POST /api/v1/leads (manually entered lead)."""

    vendor_name: str = Field(..., min_length=1, max_length=200)
    vendor_phone: str = Field(..., min_length=7)
    vendor_email: Optional[EmailStr] = None
    property_address: Optional[str] = Field(None, min_length=5, max_length=255)
    asking_price: Optional[float] = Field(None, ge=10_000, le=10_000_000)
    property_type: Optional[str] = None
    bedrooms: Optional[int] = Field(None, ge=0, le=20)
    bathrooms: Optional[int] = Field(None, ge=0, le=20)
    condition: Optional[PropertyCondition] = None
    campaign_id: Optional[str] = None

    @field_validator("vendor_phone")
    @classmethod
    def normalise_phone(cls, value: str) -> str:
        phone = normalize_uk_phone(value)
        if not phone.startswith("+") or not 8 <= len(phone) <= 16:
            raise ValueError("vendor_phone must be a valid phone number")
        return phone


class StageUpdateRequest(BaseModel):
    """Request body for PATCH /api/v1/leads/{lead_id}/stage."""

    stage: PipelineStage
    reason: Optional[str] = Field(None, max_length=500)


class OfferRejectRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class SolicitorUpdate(BaseModel):
    """Request body for PUT /api/v1/leads/{lead_id}/solicitor."""

    solicitor_name: str = Field(..., min_length=2, max_length=200)
    solicitor_firm: Optional[str] = Field(None, max_length=200)
    solicitor_phone: Optional[str] = None
    solicitor_email: Optional[EmailStr] = None


class ManualMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=1600)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class SMSMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: UUID
    sequence: int
    direction: str
    body: str
    ai_generated: bool
    intent: Optional[str] = None
    status: Optional[str] = None
    created_at: Optional[datetime] = None


class VendorLeadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    lead_id: UUID
    lead_source: str
    vendor_name: str
    vendor_phone: str
    vendor_email: Optional[str] = None
    stage: PipelineStage
    property_address: Optional[str] = None
    property_postcode: Optional[str] = None
    asking_price: Optional[float] = None
    property_type: Optional[str] = None
    bedrooms: Optional[int] = None
    condition: Optional[str] = None
    motivation_score: Optional[int] = None
    bmv_score: Optional[float] = None
    estimated_market_value: Optional[float] = None
    profit_potential: Optional[float] = None
    validation_passed: Optional[bool] = None
    validation_notes: Optional[str] = None
    offer_amount: Optional[float] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    solicitor_name: Optional[str] = None
    deal_id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class VendorLeadDetail(VendorLeadOut):
    conversation_state: Dict = Field(default_factory=dict)
    offer_breakdown: Optional[Dict] = None
    messages: List[SMSMessageOut] = Field(default_factory=list)


class VendorLeadCreateResponse(SuccessResponse):
    lead_id: UUID
    stage: PipelineStage


class LeadListResponse(BaseModel):
    items: List[VendorLeadOut]
    total: int
    limit: int
    offset: int


class LeadActionResponse(SuccessResponse):
    lead_id: UUID
    stage: PipelineStage
    message: Optional[str] = None
