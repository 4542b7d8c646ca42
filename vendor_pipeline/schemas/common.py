from enum import Enum

from pydantic import BaseModel


class PipelineStage(str, Enum):
    NEW_LEAD = "NEW_LEAD"
    AI_CONVERSATION = "AI_CONVERSATION"
    DEAL_VALIDATION = "DEAL_VALIDATION"
    OFFER_MADE = "OFFER_MADE"
    OFFER_ACCEPTED = "OFFER_ACCEPTED"
    VIDEO_SENT = "VIDEO_SENT"
    RETRY_1 = "RETRY_1"
    RETRY_2 = "RETRY_2"
    RETRY_3 = "RETRY_3"
    PAPERWORK_SENT = "PAPERWORK_SENT"
    READY_FOR_INVESTORS = "READY_FOR_INVESTORS"
    DEAD_LEAD = "DEAD_LEAD"


class PropertyCondition(str, Enum):
    excellent = "excellent"
    good = "good"
    needs_work = "needs_work"
    needs_modernisation = "needs_modernisation"
    poor = "poor"


class ReasonForSale(str, Enum):
    relocation = "relocation"
    financial = "financial"
    divorce = "divorce"
    inheritance = "inheritance"
    downsize = "downsize"
    other = "other"


class UrgencyLevel(str, Enum):
    urgent = "urgent"
    quick = "quick"
    moderate = "moderate"
    flexible = "flexible"


class MessageDirection(str, Enum):
    inbound = "inbound"
    outbound = "outbound"


class MessageStatus(str, Enum):
    queued = "queued"
    sent = "sent"
    delivered = "delivered"
    failed = "failed"
    received = "received"


class MessageIntent(str, Enum):
    provide_info = "provide_info"
    question = "question"
    accept_offer = "accept_offer"
    reject_offer = "reject_offer"
    counter_offer = "counter_offer"
    not_interested = "not_interested"
    opt_out = "opt_out"
    other = "other"


class ConversationFlow(str, Enum):
    initial = "initial"
    extracting_details = "extracting_details"
    offer_pending = "offer_pending"
    negotiating = "negotiating"
    post_acceptance = "post_acceptance"
    closed = "closed"


class SuccessResponse(BaseModel):
    """Generic success response base."""

    success: bool = True
