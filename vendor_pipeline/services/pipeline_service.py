"""Periodic pipeline cycle and its background loop.

Each step selects candidate lead ids with a "not yet processed"
predicate, then handles every lead in its own unit of work: the row is
re-loaded with ``FOR UPDATE SKIP LOCKED``, the predicate re-checked and
the work committed.  A failing lead is rolled back, logged and counted,
and is picked up again by the next cycle.  Running the cycle twice in a
row therefore does nothing the second time.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    CONVERSATIONAL_STAGES,
    NEGOTIATION_STAGES,
    POST_ACCEPTANCE_STAGES,
    RETRY_SOURCE_STAGES,
)
from vendor_pipeline.core.exceptions import (
    CollaboratorUnavailableError,
    OfferCalculationError,
)
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import ConversationFlow, PipelineStage
from vendor_pipeline.schemas.conversation import ConversationState
from vendor_pipeline.schemas.pipeline import CycleReport
from vendor_pipeline.services.conversation_agent import ConversationAgent
from vendor_pipeline.services.conversation_service import ConversationService
from vendor_pipeline.services.deal_validator import DealValidator
from vendor_pipeline.services.lead_intake_service import LeadIntakeService
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService
from vendor_pipeline.services.stage_transitions import transition_lead

logger = logging.getLogger(__name__)

LeadAction = Callable[[object, VendorLead], Awaitable[bool]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stage(lead: VendorLead) -> PipelineStage:
    return PipelineStage(lead.stage)


def _opted_out(lead: VendorLead) -> bool:
    return ConversationState.from_column(lead.conversation_state).opted_out


class VendorPipelineService:
    def __init__(
        self,
        uow_factory: Callable,
        leader_lock,
        intake_service: LeadIntakeService,
        agent: ConversationAgent,
        conversation: ConversationService,
        validator: DealValidator,
        negotiation: NegotiationService,
        messenger: LeadMessenger,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._uow_factory = uow_factory
        self._leader_lock = leader_lock
        self._intake = intake_service
        self._agent = agent
        self._conversation = conversation
        self._validator = validator
        self._negotiation = negotiation
        self._messenger = messenger
        self._clock = clock

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        async with self._leader_lock.hold() as acquired:
            if not acquired:
                logger.info("Another instance is running the pipeline cycle; skipping")
                report.skipped = True
                return report

            steps = (
                ("intake", self._step_intake),
                ("openers", self.process_new_leads),
                ("missed_replies", self.process_unanswered_messages),
                ("validation", self.process_pending_validations),
                ("retries", self.process_scheduled_retries),
                ("expiry", self.process_expired_offers),
                ("finalisation", self.process_accepted_deals),
                ("stale_cleanup", self.cleanup_stale_leads),
            )
            for name, step in steps:
                try:
                    await step(report)
                except Exception:
                    logger.error("Pipeline step %s failed", name, exc_info=True)
                    report.record_error(name)

        logger.info(
            "Pipeline cycle done: intake=%d openers=%d replies=%d offers=%d "
            "failed_validation=%d retries=%d expired=%d deals=%d stale=%d "
            "deferred=%d errors=%d",
            report.intake_created, report.openers_sent, report.replies_sent,
            report.offers_sent, report.validation_failed, report.retries_sent,
            report.offers_expired, report.deals_created, report.stale_closed,
            report.deferred, report.errors,
        )
        return report

    async def process_new_leads(self, report: CycleReport) -> None:
        async def send_opener(uow, lead: VendorLead) -> bool:
            if _stage(lead) != PipelineStage.NEW_LEAD or _opted_out(lead):
                return False
            now = self._clock()
            await transition_lead(uow, lead, PipelineStage.AI_CONVERSATION)
            lead.conversation_started_at = now
            state = ConversationState.from_column(lead.conversation_state)
            state.flow = ConversationFlow.initial
            state.messages_exchanged += 1
            state.last_question_asked = "What's your rough timeline for selling?"
            state.version += 1
            lead.conversation_state = state.to_column()
            body = self._agent.opening_message(lead.vendor_name, lead.property_address)
            await self._messenger.send(uow, lead, body, ai_generated=True)
            return True

        ids = await self._candidates(lambda uow: uow.leads.new_lead_ids())
        report.openers_sent += await self._for_each_lead("openers", ids, send_opener, report)

    async def process_unanswered_messages(self, report: CycleReport) -> None:
        cutoff = self._clock() - timedelta(seconds=settings.REPLY_GRACE_SECONDS)

        async def answer(uow, lead: VendorLead) -> bool:
            if (
                _stage(lead) not in CONVERSATIONAL_STAGES
                or _opted_out(lead)
                or lead.last_inbound_at is None
                or lead.last_inbound_at > cutoff
                or (lead.last_outbound_at and lead.last_outbound_at >= lead.last_inbound_at)
            ):
                return False
            inbound = await uow.messages.latest_inbound(lead.lead_id)
            if inbound is None:
                return False
            await self._conversation.handle_turn(uow, lead.lead_id, inbound.body)
            return True

        ids = await self._candidates(lambda uow: uow.leads.unanswered_lead_ids(cutoff))
        report.replies_sent += await self._for_each_lead("missed_replies", ids, answer, report)

    async def process_pending_validations(self, report: CycleReport) -> None:
        async def validate(uow, lead: VendorLead) -> bool:
            if _stage(lead) != PipelineStage.DEAL_VALIDATION or lead.validation_passed is not None:
                return False
            result = await self._validator.validate(lead)
            lead.validation_passed = result.passed
            lead.validation_notes = result.validation_notes
            lead.validated_at = self._clock()
            lead.bmv_score = result.bmv_score
            lead.estimated_market_value = result.estimated_market_value
            lead.estimated_refurb_cost = result.estimated_refurb_cost
            lead.profit_potential = result.profit_potential

            report.validated += 1
            reasons = result.reasons
            if result.passed:
                try:
                    await self._negotiation.send_offer(uow, lead)
                except OfferCalculationError as exc:
                    lead.validation_passed = False
                    lead.validation_notes = exc.detail
                    reasons = [exc.detail]
                else:
                    report.offers_sent += 1
                    return True

            await transition_lead(
                uow, lead, PipelineStage.DEAD_LEAD, reason=lead.validation_notes
            )
            await uow.events.add(
                lead.lead_id, "validation_failed", details={"reasons": reasons}
            )
            report.validation_failed += 1
            return True

        ids = await self._candidates(lambda uow: uow.leads.pending_validation_ids())
        await self._for_each_lead("validation", ids, validate, report)

    async def process_scheduled_retries(self, report: CycleReport) -> None:
        now = self._clock()

        async def retry(uow, lead: VendorLead) -> bool:
            if (
                _stage(lead) not in RETRY_SOURCE_STAGES
                or lead.retry_count >= settings.MAX_RETRIES
                or lead.next_retry_at is None
                or lead.next_retry_at > now
            ):
                return False
            await self._negotiation.send_retry(uow, lead, lead.retry_count + 1)
            return True

        ids = await self._candidates(
            lambda uow: uow.leads.due_retry_ids(now, settings.MAX_RETRIES)
        )
        report.retries_sent += await self._for_each_lead("retries", ids, retry, report)

    async def process_expired_offers(self, report: CycleReport) -> None:
        now = self._clock()

        async def expire(uow, lead: VendorLead) -> bool:
            if (
                _stage(lead) not in NEGOTIATION_STAGES - {PipelineStage.OFFER_MADE}
                or lead.retry_count < settings.MAX_RETRIES
                or lead.next_retry_at is None
                or lead.next_retry_at > now
            ):
                return False
            await self._negotiation.expire_offer(uow, lead)
            return True

        ids = await self._candidates(
            lambda uow: uow.leads.expired_offer_ids(now, settings.MAX_RETRIES)
        )
        report.offers_expired += await self._for_each_lead("expiry", ids, expire, report)

    async def process_accepted_deals(self, report: CycleReport) -> None:
        async def finalise(uow, lead: VendorLead) -> bool:
            if (
                _stage(lead) not in POST_ACCEPTANCE_STAGES
                or not lead.solicitor_name
                or lead.deal_id is not None
            ):
                return False
            await self._negotiation.materialise_deal(uow, lead)
            return True

        ids = await self._candidates(lambda uow: uow.leads.finalisable_ids())
        report.deals_created += await self._for_each_lead("finalisation", ids, finalise, report)

    async def cleanup_stale_leads(self, report: CycleReport) -> None:
        cutoff = self._clock() - timedelta(hours=settings.CONVERSATION_TIMEOUT_HOURS)

        async def close(uow, lead: VendorLead) -> bool:
            last_contact = lead.last_contact_at or lead.created_at
            if _stage(lead) != PipelineStage.AI_CONVERSATION or last_contact >= cutoff:
                return False
            await transition_lead(
                uow, lead, PipelineStage.DEAD_LEAD, reason="conversation timed out"
            )
            state = ConversationState.from_column(lead.conversation_state)
            state.flow = ConversationFlow.closed
            state.version += 1
            lead.conversation_state = state.to_column()
            return True

        ids = await self._candidates(lambda uow: uow.leads.stale_conversation_ids(cutoff))
        report.stale_closed += await self._for_each_lead("stale_cleanup", ids, close, report)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _step_intake(self, report: CycleReport) -> None:
        try:
            report.intake_created += await self._intake.process_new_intake_leads(
                self._uow_factory
            )
        except CollaboratorUnavailableError as exc:
            logger.warning("Lead intake unavailable this cycle: %s", exc.detail)
            report.deferred += 1

    async def _candidates(self, query: Callable) -> List[UUID]:
        async with self._uow_factory() as uow:
            return list(await query(uow))

    async def _for_each_lead(
        self, step: str, lead_ids: List[UUID], action: LeadAction, report: CycleReport
    ) -> int:
        """Run *action* per lead in its own transaction; return how many acted."""
        done = 0
        for lead_id in lead_ids:
            async with self._uow_factory() as uow:
                try:
                    lead = await uow.leads.get_for_update(lead_id, skip_locked=True)
                    if lead is None or not await action(uow, lead):
                        await uow.rollback()
                        continue
                    await uow.commit()
                    done += 1
                except CollaboratorUnavailableError as exc:
                    await uow.rollback()
                    report.deferred += 1
                    logger.warning(
                        "%s: lead %s deferred to next cycle: %s", step, lead_id, exc.detail
                    )
                except Exception:
                    await uow.rollback()
                    report.record_error(step, lead_id)
                    logger.warning(
                        "%s: failed to process lead %s", step, lead_id, exc_info=True
                    )
        return done


async def start_pipeline_loop(
    service: VendorPipelineService,
    interval: Optional[int] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the cycle now and then every *interval* seconds until stopped.

    Setting *stop_event* ends the loop between cycles; a cycle already
    in progress always finishes.
    """
    interval = interval if interval is not None else settings.PIPELINE_POLL_INTERVAL
    stop_event = stop_event or asyncio.Event()
    logger.info("Vendor pipeline background task started (interval=%ds)", interval)
    while not stop_event.is_set():
        try:
            await service.run_cycle()
        except Exception:
            logger.error("Pipeline cycle failed", exc_info=True)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Vendor pipeline background task stopped")
