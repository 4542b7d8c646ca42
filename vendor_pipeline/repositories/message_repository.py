from typing import Any, List, Optional
from uuid import UUID

from sqlalchemy import select

from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.repositories.base import BaseRepository
from vendor_pipeline.schemas.common import MessageDirection


class MessageRepository(BaseRepository):
    """Append-only access to ``sms_messages``; there is no update method."""

    async def create(self, **kwargs: Any) -> SMSMessage:
        message = SMSMessage(**kwargs)
        self._db.add(message)
        return message

    async def get_by_provider_id(self, provider_message_id: str) -> Optional[SMSMessage]:
        result = await self._db.execute(
            select(SMSMessage).where(
                SMSMessage.provider_message_id == provider_message_id
            )
        )
        return result.scalar_one_or_none()

    async def recent_for_lead(self, lead_id: UUID, limit: int) -> List[SMSMessage]:
        """Last *limit* messages for a lead, oldest first."""
        result = await self._db.execute(
            select(SMSMessage)
            .where(SMSMessage.vendor_lead_id == lead_id)
            .order_by(SMSMessage.sequence.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))

    async def latest_inbound(self, lead_id: UUID) -> Optional[SMSMessage]:
        result = await self._db.execute(
            select(SMSMessage)
            .where(
                SMSMessage.vendor_lead_id == lead_id,
                SMSMessage.direction == MessageDirection.inbound.value,
            )
            .order_by(SMSMessage.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
