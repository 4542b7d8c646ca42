import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from vendor_pipeline.core.cache import CacheService
from vendor_pipeline.core.config import settings
from vendor_pipeline.core.exceptions import (
    CollaboratorUnavailableError,
    ConcurrentUpdateError,
)
from vendor_pipeline.schemas.common import MessageDirection, MessageStatus
from vendor_pipeline.schemas.webhook import InboundSMS
from vendor_pipeline.services.conversation_service import ConversationService

logger = logging.getLogger(__name__)

DEDUP_KEY_PREFIX = "sms:inbound:"


class InboundOutcome(BaseModel):
    status: str  # recorded | duplicate | unknown_sender | processed | deferred
    lead_id: Optional[UUID] = None
    action: Optional[str] = None


class InboundService:
    """Records an inbound SMS and answers it.

    The message row is committed on its own before any reply is
    attempted, so a seller's words are never lost.  If the reply cannot
    be produced now (collaborator outage or repeated concurrent
    updates) the lead is left unanswered and the pipeline cycle picks it
    up after the grace period.
    """

    def __init__(
        self,
        uow_factory: Callable,
        conversation: ConversationService,
        cache: CacheService,
        retry_attempts: Optional[int] = None,
        dedup_ttl: Optional[int] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._conversation = conversation
        self._cache = cache
        self._retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.CONCURRENCY_RETRY_ATTEMPTS
        )
        self._dedup_ttl = dedup_ttl if dedup_ttl is not None else settings.REDIS_WEBHOOK_DEDUP_TTL

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle(self, inbound: InboundSMS) -> InboundOutcome:
        key = DEDUP_KEY_PREFIX + inbound.provider_message_id
        # Redis is only the fast path; the unique column is the authority
        if await self._cache.add(key, "1", ttl=self._dedup_ttl) is False:
            logger.info("Duplicate webhook %s (cache)", inbound.provider_message_id)
            return InboundOutcome(status="duplicate")

        try:
            recorded = await self._record(inbound)
        except Exception:
            await self._cache.delete(key)
            raise
        if recorded.status != "recorded":
            return recorded
        lead_id = recorded.lead_id

        for attempt in range(1, self._retry_attempts + 1):
            async with self._uow_factory() as uow:
                try:
                    outcome = await self._conversation.handle_turn(uow, lead_id, inbound.body)
                    await uow.commit()
                    return InboundOutcome(
                        status="processed", lead_id=lead_id, action=outcome.action
                    )
                except ConcurrentUpdateError as exc:
                    await uow.rollback()
                    logger.info(
                        "Concurrent update on lead %s (attempt %s/%s): %s",
                        lead_id, attempt, self._retry_attempts, exc.detail,
                    )
                except CollaboratorUnavailableError as exc:
                    await uow.rollback()
                    logger.warning(
                        "Reply to lead %s deferred to pipeline cycle: %s", lead_id, exc.detail
                    )
                    return InboundOutcome(status="deferred", lead_id=lead_id)

        logger.warning("Reply to lead %s deferred after %s concurrent updates",
                       lead_id, self._retry_attempts)
        return InboundOutcome(status="deferred", lead_id=lead_id)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _record(self, inbound: InboundSMS) -> InboundOutcome:
        """Persist the inbound message against the sender's lead."""
        async with self._uow_factory() as uow:
            if await uow.messages.get_by_provider_id(inbound.provider_message_id):
                logger.info("Duplicate webhook %s (database)", inbound.provider_message_id)
                return InboundOutcome(status="duplicate")

            match = await uow.leads.find_for_inbound(inbound.from_number)
            if match is None:
                logger.warning("Inbound SMS from unknown number %s", inbound.from_number)
                return InboundOutcome(status="unknown_sender")
            lead = await uow.leads.get_for_update(match.lead_id)

            now = datetime.now(timezone.utc)
            await uow.messages.create(
                vendor_lead_id=lead.lead_id,
                direction=MessageDirection.inbound.value,
                provider_message_id=inbound.provider_message_id,
                from_number=inbound.from_number,
                to_number=inbound.to_number,
                body=inbound.body,
                ai_generated=False,
                status=MessageStatus.received.value,
            )
            lead.last_inbound_at = now
            lead.last_contact_at = now
            try:
                await uow.commit()
            except IntegrityError:
                await uow.rollback()
                logger.info("Duplicate webhook %s (unique key)", inbound.provider_message_id)
                return InboundOutcome(status="duplicate")
            return InboundOutcome(status="recorded", lead_id=lead.lead_id)
