from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Identity,
    Index,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from vendor_pipeline.models.base import Base


class SMSMessage(Base):
    """Append-only log of every SMS exchanged with a vendor.

    ``sequence`` is an identity column, so ordering by it gives strict
    creation order even when two rows share a timestamp.  Rows are never
    updated; see ``listeners.block_message_updates``.
    """

    __tablename__ = "sms_messages"
    message_id = Column(
        UUID(as_uuid=True), primary_key=True, server_default=func.gen_random_uuid()
    )
    sequence = Column(BigInteger, Identity(always=True), nullable=False, unique=True)
    vendor_lead_id = Column(
        UUID(as_uuid=True),
        ForeignKey("vendor_leads.lead_id", ondelete="CASCADE"),
        nullable=False,
    )
    direction = Column(String(10), nullable=False)
    provider_message_id = Column(String(64), unique=True)
    from_number = Column(String(20))
    to_number = Column(String(20))
    body = Column(Text, nullable=False)
    ai_generated = Column(Boolean, nullable=False, default=False)
    intent = Column(String(30))
    extraction_metadata = Column(JSONB)
    status = Column(String(20))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    lead = relationship("VendorLead", back_populates="messages")

    __table_args__ = (
        Index("idx_sms_messages_lead_sequence", "vendor_lead_id", "sequence"),
        CheckConstraint(
            "direction IN ('inbound', 'outbound')", name="ck_message_direction"
        ),
    )
