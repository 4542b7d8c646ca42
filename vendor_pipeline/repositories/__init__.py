"""Repository layer – all database access goes through here.

Repositories encapsulate SQLAlchemy queries so that the service layer
only contains business logic.
"""

from vendor_pipeline.repositories.lead_repository import LeadRepository
from vendor_pipeline.repositories.message_repository import MessageRepository
from vendor_pipeline.repositories.deal_repository import DealRepository
from vendor_pipeline.repositories.event_repository import EventRepository
from vendor_pipeline.repositories.intake_sync_repository import IntakeSyncRepository
from vendor_pipeline.repositories.lock_repository import AdvisoryLock
from vendor_pipeline.repositories.unit_of_work import (
    PipelineUnitOfWork,
    unit_of_work_factory,
)

__all__ = [
    "LeadRepository",
    "MessageRepository",
    "DealRepository",
    "EventRepository",
    "IntakeSyncRepository",
    "AdvisoryLock",
    "PipelineUnitOfWork",
    "unit_of_work_factory",
]
