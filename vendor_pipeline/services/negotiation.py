import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    NEGOTIATION_STAGES,
    POST_ACCEPTANCE_STAGES,
    RETRY_SOURCE_STAGES,
    RETRY_STAGE_BY_NUMBER,
)
from vendor_pipeline.core.exceptions import (
    InvalidStageTransitionError,
    OfferCalculationError,
)
from vendor_pipeline.core.formatting import format_gbp
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import ConversationFlow, PipelineStage
from vendor_pipeline.schemas.conversation import ConversationState
from vendor_pipeline.schemas.offer import OfferCalculation, OfferInput
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.offer_engine import OfferEngine
from vendor_pipeline.services.stage_transitions import transition_lead

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _first_name(lead: VendorLead) -> str:
    return (lead.vendor_name or "there").split()[0]


def _deadline_text(moment: datetime) -> str:
    return f"{moment.strftime('%A')} {moment.day} {moment.strftime('%B')}"


# ---------------------------------------------------------------------------
# Message templates
# ---------------------------------------------------------------------------


def offer_message(lead: VendorLead, amount: float, completion_days: int) -> str:
    return (
        f"Hi {_first_name(lead)}, based on our assessment of "
        f"{lead.property_address or 'your property'}, we can offer {format_gbp(amount)} "
        f"for a quick cash sale (completion in {completion_days} days). This reflects "
        "the current condition and lets us move quickly. Interested in discussing?"
    )


def acceptance_message() -> str:
    return (
        "Great! We're excited to move forward. Could you send your solicitor's "
        "details (name, firm, email and phone) so we can send over the paperwork?"
    )


def objection_message(video_url: str) -> str:
    if video_url:
        return (
            "I understand. This short video answers the questions sellers usually "
            f"have about cash offers: {video_url}. We'll check in again in a couple of days."
        )
    return (
        "I understand. We'll check in again in a couple of days in case your "
        "situation changes."
    )


def retry_message(lead: VendorLead, retry_number: int, amount: float, deadline: datetime) -> str:
    name = _first_name(lead)
    subject = lead.property_address or "your property"
    if retry_number == 1:
        return (
            f"Hi {name}, just checking whether you've had time to consider our offer of "
            f"{format_gbp(amount)} for {subject}? We can complete quickly with no chain."
        )
    if retry_number == 2:
        return (
            f"Hi {name}, we can be flexible. Would {format_gbp(amount)} with a "
            "completion date that suits you work better? Let me know your thoughts."
        )
    return (
        f"Hi {name}, this is our final offer of {format_gbp(amount)} for {subject}. "
        f"Please let us know by {_deadline_text(deadline)} if you'd like to go ahead."
    )


class NegotiationService:
    """Offer delivery, acceptance, rejection and the retry ladder.

    Every method mutates the lead, records events and sends at most one
    SMS inside the caller's unit of work; the caller commits.
    """

    def __init__(
        self,
        messenger: LeadMessenger,
        offer_engine: OfferEngine,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._messenger = messenger
        self._engine = offer_engine
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def price(self, lead: VendorLead) -> OfferCalculation:
        return self._engine.calculate_offer(self._offer_input(lead))

    async def send_offer(self, uow, lead: VendorLead, actor: str = "pipeline") -> OfferCalculation:
        calculation = self.price(lead)
        if calculation.offer_amount <= 0:
            raise OfferCalculationError(
                f"Lead {lead.lead_id} cannot be offered a positive amount"
            )
        now = self._clock()

        await transition_lead(uow, lead, PipelineStage.OFFER_MADE, actor=actor)
        lead.offer_amount = calculation.offer_amount
        lead.offer_percentage = calculation.offer_percentage
        lead.profit_potential = calculation.profit_potential
        lead.offer_breakdown = calculation.breakdown.model_dump()
        lead.offer_sent_at = now
        self._set_flow(lead, ConversationFlow.negotiating)
        await uow.events.add(
            lead.lead_id, "offer_sent", details=calculation.model_dump(), actor=actor
        )

        body = offer_message(lead, calculation.offer_amount, settings.DEFAULT_COMPLETION_DAYS)
        await self._messenger.send(uow, lead, body)
        logger.info("Offer of %s sent to lead %s", format_gbp(calculation.offer_amount), lead.lead_id)
        return calculation

    async def accept_offer(self, uow, lead: VendorLead, actor: str = "vendor") -> None:
        if lead.stage not in {s.value for s in NEGOTIATION_STAGES}:
            raise InvalidStageTransitionError(
                f"Lead {lead.lead_id} has no open offer (stage {lead.stage})"
            )
        await transition_lead(uow, lead, PipelineStage.OFFER_ACCEPTED, actor=actor)
        lead.offer_accepted_at = self._clock()
        lead.next_retry_at = None
        self._set_flow(lead, ConversationFlow.post_acceptance)
        await uow.events.add(
            lead.lead_id,
            "offer_accepted",
            details={"offer_amount": float(lead.offer_amount or 0)},
            actor=actor,
        )
        await self._messenger.send(uow, lead, acceptance_message())

    async def reject_offer(
        self, uow, lead: VendorLead, reason: Optional[str] = None, actor: str = "vendor"
    ) -> None:
        """Handle a first rejection: objection video, then the retry ladder.

        A rejection while already in the retry ladder only updates the
        recorded reason; the scheduled retries continue.
        """
        now = self._clock()
        if lead.stage in {s.value for s in RETRY_SOURCE_STAGES | {PipelineStage.RETRY_3}}:
            lead.rejection_reason = reason or lead.rejection_reason
            lead.offer_rejected_at = now
            await uow.events.add(
                lead.lead_id, "offer_rejected_again", details={"reason": reason}, actor=actor
            )
            return

        await transition_lead(uow, lead, PipelineStage.VIDEO_SENT, actor=actor, reason=reason)
        video_url = settings.VIDEO_OBJECTION_URL
        lead.offer_rejected_at = now
        lead.rejection_reason = reason
        lead.video_sent = True
        lead.video_url = video_url or None
        lead.retry_count = 0
        lead.next_retry_at = now + timedelta(days=settings.retry_delay_days(1))
        await uow.events.add(
            lead.lead_id,
            "offer_rejected",
            details={"reason": reason, "next_retry_at": lead.next_retry_at.isoformat()},
            actor=actor,
        )
        await self._messenger.send(uow, lead, objection_message(video_url))

    async def send_retry(self, uow, lead: VendorLead, retry_number: int) -> None:
        if retry_number != lead.retry_count + 1 or retry_number > settings.MAX_RETRIES:
            raise InvalidStageTransitionError(
                f"Retry {retry_number} is not due for lead {lead.lead_id} "
                f"(retry_count={lead.retry_count})"
            )
        now = self._clock()
        details = {"retry_number": retry_number}

        amount = float(lead.offer_amount or 0)
        if retry_number == 2:
            flex = self._engine.calculate_flex_offer(amount, self._offer_input(lead))
            amount = flex.offer_amount
            lead.offer_amount = flex.offer_amount
            lead.offer_percentage = flex.offer_percentage
            lead.profit_potential = flex.profit_potential
            details["flex_offer"] = flex.model_dump()

        await transition_lead(uow, lead, RETRY_STAGE_BY_NUMBER[retry_number])
        lead.retry_count = retry_number
        if retry_number < settings.MAX_RETRIES:
            lead.next_retry_at = now + timedelta(days=settings.retry_delay_days(retry_number + 1))
        else:
            lead.next_retry_at = now + timedelta(days=settings.FINAL_OFFER_DEADLINE_DAYS)
        details["next_retry_at"] = lead.next_retry_at.isoformat()
        await uow.events.add(lead.lead_id, "retry_sent", details=details)

        deadline = now + timedelta(days=settings.FINAL_OFFER_DEADLINE_DAYS)
        await self._messenger.send(uow, lead, retry_message(lead, retry_number, amount, deadline))

    async def expire_offer(self, uow, lead: VendorLead) -> None:
        await transition_lead(
            uow, lead, PipelineStage.DEAD_LEAD, reason="final offer deadline passed"
        )
        lead.next_retry_at = None
        self._set_flow(lead, ConversationFlow.closed)
        await uow.events.add(lead.lead_id, "offer_expired")

    async def record_solicitor(
        self,
        uow,
        lead: VendorLead,
        solicitor_name: str,
        solicitor_firm: Optional[str] = None,
        solicitor_phone: Optional[str] = None,
        solicitor_email: Optional[str] = None,
        actor: str = "operator",
    ) -> None:
        if lead.stage not in {s.value for s in POST_ACCEPTANCE_STAGES}:
            raise InvalidStageTransitionError(
                f"Solicitor details apply only after acceptance (stage {lead.stage})"
            )
        lead.solicitor_name = solicitor_name
        lead.solicitor_firm = solicitor_firm or lead.solicitor_firm
        lead.solicitor_phone = solicitor_phone or lead.solicitor_phone
        lead.solicitor_email = solicitor_email or lead.solicitor_email
        await uow.events.add(lead.lead_id, "solicitor_recorded", actor=actor)

    async def materialise_deal(self, uow, lead: VendorLead) -> None:
        """Create the investor-facing deal and close the lead."""
        deal = await uow.deals.get_by_lead(lead.lead_id)
        if deal is None:
            deal = await uow.deals.create(
                vendor_lead_id=lead.lead_id,
                address=lead.property_address or "Unknown address",
                postcode=lead.property_postcode,
                purchase_price=lead.offer_amount,
                market_value=lead.estimated_market_value,
                estimated_refurb_cost=lead.estimated_refurb_cost,
                bmv_percentage=lead.bmv_score,
                property_type=lead.property_type,
                bedrooms=lead.bedrooms,
                bathrooms=lead.bathrooms,
                vendor_solicitor_name=lead.solicitor_name,
                vendor_solicitor_firm=lead.solicitor_firm,
                vendor_solicitor_email=lead.solicitor_email,
                vendor_solicitor_phone=lead.solicitor_phone,
                lockout_agreement_sent=bool(lead.lockout_agreement_sent),
                data_source="vendor_acquisition",
                status="ready",
            )
        lead.deal_id = deal.deal_id
        lead.deal_closed_at = self._clock()
        self._set_flow(lead, ConversationFlow.closed)
        await transition_lead(uow, lead, PipelineStage.READY_FOR_INVESTORS)
        await uow.events.add(
            lead.lead_id, "deal_created", details={"deal_id": str(deal.deal_id)}
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _offer_input(lead: VendorLead) -> OfferInput:
        if not lead.asking_price or not lead.estimated_market_value:
            raise OfferCalculationError(
                f"Lead {lead.lead_id} lacks an asking price or market value"
            )
        return OfferInput(
            asking_price=float(lead.asking_price),
            market_value=float(lead.estimated_market_value),
            refurb_cost=float(lead.estimated_refurb_cost or 0),
            motivation_score=lead.motivation_score,
            bedrooms=lead.bedrooms,
        )

    @staticmethod
    def _set_flow(lead: VendorLead, flow: ConversationFlow) -> None:
        state = ConversationState.from_column(lead.conversation_state)
        state.flow = flow
        state.version += 1
        lead.conversation_state = state.to_column()
