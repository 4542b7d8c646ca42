from vendor_pipeline.models.base import Base
from vendor_pipeline.models.deal import Deal
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.models.pipeline_event import PipelineEvent
from vendor_pipeline.models.intake_sync import LeadIntakeSync

# Import event listeners to register them
from vendor_pipeline.models import listeners  # noqa: F401

__all__ = [
    "Base",
    "Deal",
    "VendorLead",
    "SMSMessage",
    "PipelineEvent",
    "LeadIntakeSync",
]
