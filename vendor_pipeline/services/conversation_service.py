"""One conversation turn: agent reply, fact merge and intent handling.

Used by the SMS webhook and by the pipeline cycle's missed-reply step.
The inference call runs before the row lock is taken; the lead is then
re-read under ``FOR UPDATE`` and the merge is rejected if the
conversation moved on in the meantime.  The caller commits.
"""

import logging
import re
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    ALLOWED_TRANSITIONS,
    NEGOTIATION_STAGES,
    OPT_OUT_KEYWORDS,
    TERMINAL_STAGES,
)
from vendor_pipeline.core.exceptions import ConcurrentUpdateError, LeadNotFoundError
from vendor_pipeline.core.formatting import format_gbp
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import ConversationFlow, MessageIntent, PipelineStage
from vendor_pipeline.schemas.conversation import ConversationState
from vendor_pipeline.services.conversation_agent import ConversationAgent
from vendor_pipeline.services.extraction import ExtractionMerger
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService
from vendor_pipeline.services.stage_transitions import transition_lead

logger = logging.getLogger(__name__)

CLOSED_ACKNOWLEDGEMENT = (
    "Thanks for your message. A member of our team will be in touch if we can help further."
)
VALIDATION_HOLDING_REPLY = (
    "Thanks! We're reviewing the details now and will come back to you with an offer shortly."
)
PAPERWORK_HOLDING_REPLY = (
    "Thanks for your message. The paperwork is with the solicitors and we'll keep you updated."
)

_REJECTION_INTENTS = {MessageIntent.reject_offer, MessageIntent.not_interested}


def is_opt_out(body: str) -> bool:
    """Whole-message match on the carrier opt-out keywords."""
    return re.sub(r"[^a-z]", "", (body or "").lower()) in OPT_OUT_KEYWORDS


class TurnOutcome(BaseModel):
    lead_id: UUID
    action: str
    reply: Optional[str] = None


class ConversationService:
    def __init__(
        self,
        agent: ConversationAgent,
        merger: ExtractionMerger,
        messenger: LeadMessenger,
        negotiation: NegotiationService,
        history_limit: Optional[int] = None,
    ) -> None:
        self._agent = agent
        self._merger = merger
        self._messenger = messenger
        self._negotiation = negotiation
        self._history_limit = (
            history_limit if history_limit is not None
            else settings.CONVERSATION_HISTORY_LIMIT
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def handle_turn(self, uow, lead_id: UUID, latest_message: str) -> TurnOutcome:
        lead = await uow.leads.get_by_id(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Vendor lead {lead_id} not found")

        if is_opt_out(latest_message):
            return await self._opt_out(uow, lead_id)

        stage = PipelineStage(lead.stage)
        state = ConversationState.from_column(lead.conversation_state)
        if state.opted_out:
            return TurnOutcome(lead_id=lead_id, action="ignored")
        if stage in TERMINAL_STAGES:
            return await self._canned(uow, lead_id, CLOSED_ACKNOWLEDGEMENT, "acknowledged")
        if stage == PipelineStage.DEAL_VALIDATION:
            return await self._canned(uow, lead_id, VALIDATION_HOLDING_REPLY, "holding")
        if stage == PipelineStage.PAPERWORK_SENT:
            return await self._canned(uow, lead_id, PAPERWORK_HOLDING_REPLY, "holding")

        history = await uow.messages.recent_for_lead(lead_id, self._history_limit)
        turn = await self._agent.respond(
            vendor_name=lead.vendor_name,
            stage=stage,
            history=history,
            state=state,
            latest_message=latest_message,
            offer_amount=format_gbp(float(lead.offer_amount)) if lead.offer_amount else None,
        )

        lead = await self._lock(uow, lead_id)
        if lead.stage != stage.value:
            raise ConcurrentUpdateError(
                f"Lead {lead_id} moved from {stage.value} to {lead.stage} during the turn"
            )
        if turn.intent == MessageIntent.opt_out:
            return await self._opt_out(uow, lead_id)

        current = ConversationState.from_column(lead.conversation_state)
        outcome = self._merger.merge(
            current,
            turn.extraction,
            turn.motivation_score,
            expected_version=state.version,
            exchanged=2,
        )
        outcome.state.last_question_asked = turn.next_question or current.last_question_asked
        metadata = turn.audit_metadata()
        if outcome.rejected:
            metadata["rejected_fields"] = outcome.rejected

        if stage == PipelineStage.NEW_LEAD:
            await transition_lead(uow, lead, PipelineStage.AI_CONVERSATION, actor="vendor")
            lead.conversation_started_at = lead.conversation_started_at or lead.last_inbound_at
            stage = PipelineStage.AI_CONVERSATION

        action = "replied"
        if stage == PipelineStage.AI_CONVERSATION:
            if turn.intent == MessageIntent.not_interested:
                outcome.state.flow = ConversationFlow.closed
                await transition_lead(
                    uow, lead, PipelineStage.DEAD_LEAD, actor="vendor", reason="not interested"
                )
                action = "closed"
            elif outcome.state.conversation_complete:
                outcome.state.flow = ConversationFlow.offer_pending
                await transition_lead(
                    uow, lead, PipelineStage.DEAL_VALIDATION,
                    reason="conversation complete",
                    details={"messages_exchanged": outcome.state.messages_exchanged},
                )
                action = "completed"
            else:
                outcome.state.flow = ConversationFlow.extracting_details
        ExtractionMerger.apply_to_lead(lead, outcome)

        if stage in NEGOTIATION_STAGES:
            if turn.intent == MessageIntent.accept_offer:
                await self._negotiation.accept_offer(uow, lead)
                return TurnOutcome(lead_id=lead_id, action="accepted")
            if turn.intent in _REJECTION_INTENTS:
                first_rejection = stage == PipelineStage.OFFER_MADE
                await self._negotiation.reject_offer(uow, lead, reason=latest_message)
                if first_rejection:
                    return TurnOutcome(lead_id=lead_id, action="rejected")

        await self._messenger.send(
            uow, lead, turn.reply, ai_generated=True, intent=turn.intent, metadata=metadata
        )
        return TurnOutcome(lead_id=lead_id, action=action, reply=turn.reply)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _lock(uow, lead_id: UUID) -> VendorLead:
        lead = await uow.leads.get_for_update(lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Vendor lead {lead_id} not found")
        return lead

    async def _canned(self, uow, lead_id: UUID, body: str, action: str) -> TurnOutcome:
        lead = await self._lock(uow, lead_id)
        await self._messenger.send(uow, lead, body)
        return TurnOutcome(lead_id=lead_id, action=action, reply=body)

    async def _opt_out(self, uow, lead_id: UUID) -> TurnOutcome:
        lead = await self._lock(uow, lead_id)
        state = ConversationState.from_column(lead.conversation_state)
        state.opted_out = True
        state.flow = ConversationFlow.closed
        state.version += 1
        lead.conversation_state = state.to_column()
        lead.next_retry_at = None
        if PipelineStage.DEAD_LEAD in ALLOWED_TRANSITIONS[PipelineStage(lead.stage)]:
            await transition_lead(
                uow, lead, PipelineStage.DEAD_LEAD, actor="vendor", reason="opted out"
            )
        await uow.events.add(lead.lead_id, "opted_out", actor="vendor")
        logger.info("Lead %s opted out of SMS", lead_id)
        return TurnOutcome(lead_id=lead_id, action="opted_out")
