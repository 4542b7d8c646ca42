from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func

from vendor_pipeline.models.base import Base


class Deal(Base):
    """Investor-facing deal created from an accepted vendor offer."""

    __tablename__ = "deals"
    deal_id = Column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    vendor_lead_id = Column(
        UUID(as_uuid=True),
        ForeignKey("vendor_leads.lead_id", ondelete="SET NULL", use_alter=True),
        unique=True,
    )
    address = Column(String(255), nullable=False)
    postcode = Column(String(10))
    purchase_price = Column(Numeric(12, 2), nullable=False)
    market_value = Column(Numeric(12, 2))
    estimated_refurb_cost = Column(Numeric(12, 2))
    bmv_percentage = Column(Numeric(6, 2))
    property_type = Column(String(50))
    bedrooms = Column(Integer)
    bathrooms = Column(Integer)
    vendor_solicitor_name = Column(String(200))
    vendor_solicitor_firm = Column(String(200))
    vendor_solicitor_email = Column(String(255))
    vendor_solicitor_phone = Column(String(20))
    lockout_agreement_sent = Column(Boolean, nullable=False, default=False)
    data_source = Column(String(50), nullable=False, server_default="vendor_acquisition")
    status = Column(String(20), nullable=False, server_default="ready")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
