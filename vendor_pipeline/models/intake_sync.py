from sqlalchemy import Column, DateTime, ForeignKey, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.sql import func

from vendor_pipeline.models.base import Base


class LeadIntakeSync(Base):
    """One row per external lead already pulled from the intake adapter.

    ``MAX(submitted_at)`` is the watermark for the next intake fetch.
    """

    __tablename__ = "lead_intake_syncs"
    sync_id = Column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    external_lead_id = Column(String(100), nullable=False, unique=True)
    vendor_lead_id = Column(
        UUID(as_uuid=True), ForeignKey("vendor_leads.lead_id", ondelete="SET NULL")
    )
    submitted_at = Column(DateTime(timezone=True))
    payload = Column(JSONB)
    synced_at = Column(DateTime(timezone=True), server_default=func.now())
