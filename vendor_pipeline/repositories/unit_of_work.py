from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from vendor_pipeline.repositories.base import BaseRepository
from vendor_pipeline.repositories.deal_repository import DealRepository
from vendor_pipeline.repositories.event_repository import EventRepository
from vendor_pipeline.repositories.intake_sync_repository import IntakeSyncRepository
from vendor_pipeline.repositories.lead_repository import LeadRepository
from vendor_pipeline.repositories.message_repository import MessageRepository


class PipelineUnitOfWork(BaseRepository):
    """All repositories sharing one session, i.e. one transaction."""

    def __init__(self, db: AsyncSession) -> None:
        super().__init__(db)
        self.leads = LeadRepository(db)
        self.messages = MessageRepository(db)
        self.deals = DealRepository(db)
        self.events = EventRepository(db)
        self.intake_syncs = IntakeSyncRepository(db)


def unit_of_work_factory(session_factory: Callable[[], AsyncSession]):
    """Return a callable opening a fresh ``PipelineUnitOfWork`` per use."""

    @asynccontextmanager
    async def open_unit_of_work() -> AsyncIterator[PipelineUnitOfWork]:
        async with session_factory() as session:
            yield PipelineUnitOfWork(session)

    return open_unit_of_work
