import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from vendor_pipeline.core.config import settings
from vendor_pipeline.integrations.messaging import MessagingGateway
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.schemas.common import MessageDirection, MessageIntent
from vendor_pipeline.schemas.conversation import ConversationState

logger = logging.getLogger(__name__)


class LeadMessenger:
    """Sends an SMS to a lead and appends it to the message log.

    Pending changes are flushed before the gateway is called so that a
    database error surfaces before anything reaches the seller.  If the
    gateway fails the caller's transaction is rolled back and nothing is
    recorded.  Sellers who opted out are never messaged.
    """

    def __init__(self, gateway: MessagingGateway, from_number: Optional[str] = None) -> None:
        self._gateway = gateway
        self._from_number = from_number if from_number is not None else settings.sender_number

    async def send(
        self,
        uow,
        lead: VendorLead,
        body: str,
        ai_generated: bool = False,
        intent: Optional[MessageIntent] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[SMSMessage]:
        if ConversationState.from_column(lead.conversation_state).opted_out:
            logger.warning("Not messaging lead %s: seller opted out", lead.lead_id)
            return None
        await uow.flush()
        result = await self._gateway.send(lead.vendor_phone, body)

        now = datetime.now(timezone.utc)
        message = await uow.messages.create(
            vendor_lead_id=lead.lead_id,
            direction=MessageDirection.outbound.value,
            provider_message_id=result.message_id,
            from_number=self._from_number,
            to_number=lead.vendor_phone,
            body=body,
            ai_generated=ai_generated,
            intent=intent.value if intent else None,
            extraction_metadata=metadata,
            status=result.status.value,
        )
        lead.last_outbound_at = now
        lead.last_contact_at = now
        return message
