from sqlalchemy import Column, DateTime, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from vendor_pipeline.models.base import Base


class PipelineEvent(Base):
    __tablename__ = "pipeline_events"
    event_id = Column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    vendor_lead_id = Column(
        UUID(as_uuid=True),
        ForeignKey("vendor_leads.lead_id", ondelete="CASCADE"),
        nullable=False,
    )
    event_type = Column(String(50), nullable=False)
    from_stage = Column(String(30))
    to_stage = Column(String(30))
    details = Column(JSONB)
    actor = Column(String(100), nullable=False, server_default="pipeline")
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lead = relationship("VendorLead", back_populates="events")

    __table_args__ = (
        Index("idx_pipeline_events_lead_created", "vendor_lead_id", "created_at"),
    )
