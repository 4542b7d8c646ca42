from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from vendor_pipeline.core.constants import STAGE_CHECK_CLAUSE
from vendor_pipeline.models.base import Base


class VendorLead(Base):
    """A seller's property opportunity moving through the acquisition pipeline.

    Holds the vendor's contact details, the property facts gathered by
    the SMS conversation, underwriting and offer outputs, and the retry
    schedule.  ``version`` is the optimistic-concurrency counter: every
    UPDATE issued by the ORM is conditional on the version that was read,
    so the pipeline cycle and the inbound webhook cannot silently
    overwrite each other.
    """

    __tablename__ = "vendor_leads"
    lead_id = Column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    external_lead_id = Column(String(100), unique=True)
    lead_source = Column(String(50), nullable=False, server_default="manual")
    campaign_id = Column(String(100))

    vendor_name = Column(String(200), nullable=False)
    vendor_phone = Column(String(20), nullable=False)
    vendor_email = Column(String(255))

    property_address = Column(String(255))
    property_postcode = Column(String(10))
    asking_price = Column(Numeric(12, 2))
    property_type = Column(String(50))
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    condition = Column(String(30))
    square_feet = Column(Integer)

    stage = Column(String(30), nullable=False, server_default="NEW_LEAD")
    motivation_score = Column(Integer)
    urgency_level = Column(String(20))
    reason_for_selling = Column(String(30))
    timeline_days = Column(Integer)
    competing_offers = Column(Boolean)
    conversation_state = Column(JSONB, nullable=False, server_default=text("'{}'::jsonb"))

    conversation_started_at = Column(DateTime(timezone=True))
    last_contact_at = Column(DateTime(timezone=True))
    last_inbound_at = Column(DateTime(timezone=True))
    last_outbound_at = Column(DateTime(timezone=True))

    bmv_score = Column(Numeric(6, 2))
    estimated_market_value = Column(Numeric(12, 2))
    estimated_refurb_cost = Column(Numeric(12, 2))
    profit_potential = Column(Numeric(12, 2))
    validation_passed = Column(Boolean)
    validation_notes = Column(Text)
    validated_at = Column(DateTime(timezone=True))

    offer_amount = Column(Numeric(12, 2))
    offer_percentage = Column(Numeric(6, 2))
    offer_breakdown = Column(JSONB)
    offer_sent_at = Column(DateTime(timezone=True))
    offer_accepted_at = Column(DateTime(timezone=True))
    offer_rejected_at = Column(DateTime(timezone=True))
    rejection_reason = Column(Text)
    video_sent = Column(Boolean, nullable=False, server_default=text("false"))
    video_url = Column(String(500))

    retry_count = Column(Integer, nullable=False, server_default=text("0"))
    next_retry_at = Column(DateTime(timezone=True))

    solicitor_name = Column(String(200))
    solicitor_firm = Column(String(200))
    solicitor_phone = Column(String(20))
    solicitor_email = Column(String(255))
    lockout_agreement_sent = Column(Boolean, nullable=False, server_default=text("false"))
    deal_id = Column(UUID(as_uuid=True), ForeignKey("deals.deal_id", ondelete="SET NULL"))
    deal_closed_at = Column(DateTime(timezone=True))

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    messages = relationship(
        "SMSMessage",
        back_populates="lead",
        cascade="all, delete-orphan",
        order_by="SMSMessage.sequence",
    )
    events = relationship(
        "PipelineEvent", back_populates="lead", cascade="all, delete-orphan"
    )
    deal = relationship("Deal", foreign_keys=[deal_id])

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_vendor_leads_phone_created", "vendor_phone", "created_at"),
        Index("idx_vendor_leads_stage", "stage"),
        Index(
            "idx_vendor_leads_retry_due",
            "next_retry_at",
            postgresql_where=text("next_retry_at IS NOT NULL"),
        ),
        CheckConstraint(STAGE_CHECK_CLAUSE, name="ck_vendor_lead_stage"),
        CheckConstraint(
            "motivation_score IS NULL OR motivation_score BETWEEN 1 AND 10",
            name="ck_motivation_score_range",
        ),
        CheckConstraint(
            "retry_count BETWEEN 0 AND 3", name="ck_retry_count_range"
        ),
        CheckConstraint(
            "condition IS NULL OR condition IN ('excellent', 'good', 'needs_work', "
            "'needs_modernisation', 'poor')",
            name="ck_property_condition",
        ),
        CheckConstraint(
            "offer_amount IS NULL OR asking_price IS NULL OR offer_amount <= asking_price",
            name="ck_offer_not_above_asking",
        ),
    )
