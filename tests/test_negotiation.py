from datetime import timedelta
from uuid import uuid4

import pytest

from vendor_pipeline.core.exceptions import (
    InvalidStageTransitionError,
    OfferCalculationError,
)
from vendor_pipeline.models.deal import Deal
from vendor_pipeline.schemas.common import ConversationFlow, PipelineStage
from vendor_pipeline.schemas.conversation import ConversationState
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService, retry_message
from vendor_pipeline.services.offer_engine import OfferEngine
from tests.fakes import FIXED_NOW, FakeGateway, FakeUnitOfWork, make_lead, make_offer_lead


class Clock:
    def __init__(self, now=FIXED_NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, days):
        self.now = self.now + timedelta(days=days)


def _negotiation(gateway, clock=None):
    messenger = LeadMessenger(gateway, from_number="+441615550000")
    return NegotiationService(messenger, OfferEngine(), clock=clock or Clock())


class TestSendOffer:
    @pytest.mark.asyncio
    async def test_offer_is_priced_recorded_and_sent(self, fake_gateway):
        lead = make_offer_lead()
        uow = FakeUnitOfWork([lead])

        calculation = await _negotiation(fake_gateway).send_offer(uow, lead)

        assert calculation.offer_amount == 212_000
        assert lead.stage == PipelineStage.OFFER_MADE.value
        assert float(lead.offer_amount) == 212_000
        assert lead.offer_sent_at == FIXED_NOW
        assert lead.offer_breakdown["final_offer"] == 212_000
        state = ConversationState.from_column(lead.conversation_state)
        assert state.flow == ConversationFlow.negotiating
        assert "offer_sent" in uow.event_types()
        assert len(fake_gateway.sent) == 1
        assert "£212,000" in fake_gateway.sent[0][1]
        assert "14 days" in fake_gateway.sent[0][1]

    @pytest.mark.asyncio
    async def test_missing_market_value_cannot_be_priced(self, fake_gateway):
        lead = make_offer_lead(estimated_market_value=None)
        uow = FakeUnitOfWork([lead])

        with pytest.raises(OfferCalculationError):
            await _negotiation(fake_gateway).send_offer(uow, lead)

        assert lead.stage == PipelineStage.DEAL_VALIDATION.value
        assert fake_gateway.sent == []

    @pytest.mark.asyncio
    async def test_offer_from_wrong_stage_is_rejected(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])

        with pytest.raises(InvalidStageTransitionError):
            await _negotiation(fake_gateway).send_offer(uow, lead)
        assert fake_gateway.sent == []


class TestRetryLadder:
    @pytest.mark.asyncio
    async def test_full_ladder_schedule(self, fake_gateway):
        clock = Clock()
        negotiation = _negotiation(fake_gateway, clock)
        lead = make_offer_lead(stage=PipelineStage.OFFER_MADE.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])

        await negotiation.reject_offer(uow, lead, reason="too low")
        assert lead.stage == PipelineStage.VIDEO_SENT.value
        assert lead.video_sent is True
        assert lead.next_retry_at == FIXED_NOW + timedelta(days=2)

        clock.advance(2)
        await negotiation.send_retry(uow, lead, 1)
        assert lead.stage == PipelineStage.RETRY_1.value
        assert lead.retry_count == 1
        assert lead.next_retry_at == clock.now + timedelta(days=4)

        clock.advance(4)
        await negotiation.send_retry(uow, lead, 2)
        assert lead.stage == PipelineStage.RETRY_2.value
        assert lead.next_retry_at == clock.now + timedelta(days=7)
        assert float(lead.offer_amount) >= 212_000

        clock.advance(7)
        await negotiation.send_retry(uow, lead, 3)
        assert lead.stage == PipelineStage.RETRY_3.value
        assert lead.retry_count == 3
        assert lead.next_retry_at == clock.now + timedelta(days=3)

        bodies = [body for _, body in fake_gateway.sent]
        assert len(bodies) == 4
        assert "final offer" in bodies[-1]
        assert uow.event_types().count("retry_sent") == 3

    @pytest.mark.asyncio
    async def test_retry_out_of_order_is_rejected(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.VIDEO_SENT.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])

        with pytest.raises(InvalidStageTransitionError):
            await _negotiation(fake_gateway).send_retry(uow, lead, 2)
        assert lead.retry_count == 0
        assert fake_gateway.sent == []

    @pytest.mark.asyncio
    async def test_flex_retry_raises_offer_when_room_under_cap(self, fake_gateway):
        lead = make_offer_lead(
            stage=PipelineStage.RETRY_1.value,
            asking_price=300_000,
            estimated_market_value=400_000,
            estimated_refurb_cost=5_000,
            offer_amount=200_000,
            retry_count=1,
        )
        uow = FakeUnitOfWork([lead])

        await _negotiation(fake_gateway).send_retry(uow, lead, 2)

        assert float(lead.offer_amount) == 204_000
        assert "£204,000" in fake_gateway.sent[0][1]

    def test_final_retry_message_names_deadline(self):
        lead = make_lead(vendor_name="Sarah Jones", property_address="12 High Street")
        body = retry_message(lead, 3, 212_000, FIXED_NOW + timedelta(days=3))
        assert body.startswith("Hi Sarah")
        assert "Thursday 5 March" in body


class TestClosingOut:
    @pytest.mark.asyncio
    async def test_expired_final_offer_closes_lead(self, fake_gateway):
        lead = make_offer_lead(
            stage=PipelineStage.RETRY_3.value,
            retry_count=3,
            next_retry_at=FIXED_NOW,
        )
        uow = FakeUnitOfWork([lead])

        await _negotiation(fake_gateway).expire_offer(uow, lead)

        assert lead.stage == PipelineStage.DEAD_LEAD.value
        assert lead.next_retry_at is None
        assert "offer_expired" in uow.event_types()
        assert fake_gateway.sent == []

    @pytest.mark.asyncio
    async def test_accept_requires_open_offer(self, fake_gateway):
        lead = make_offer_lead()
        uow = FakeUnitOfWork([lead])
        with pytest.raises(InvalidStageTransitionError):
            await _negotiation(fake_gateway).accept_offer(uow, lead)

    @pytest.mark.asyncio
    async def test_accept_during_retries_clears_schedule(self, fake_gateway):
        lead = make_offer_lead(
            stage=PipelineStage.RETRY_2.value,
            offer_amount=212_000,
            retry_count=2,
            next_retry_at=FIXED_NOW,
        )
        uow = FakeUnitOfWork([lead])

        await _negotiation(fake_gateway).accept_offer(uow, lead, actor="operator")

        assert lead.stage == PipelineStage.OFFER_ACCEPTED.value
        assert lead.next_retry_at is None
        assert uow.events_log[-1]["actor"] == "operator"

    @pytest.mark.asyncio
    async def test_solicitor_only_after_acceptance(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_MADE.value)
        uow = FakeUnitOfWork([lead])
        with pytest.raises(InvalidStageTransitionError):
            await _negotiation(fake_gateway).record_solicitor(uow, lead, "Jane Smith")

    @pytest.mark.asyncio
    async def test_record_solicitor_keeps_known_details(self, fake_gateway):
        lead = make_offer_lead(
            stage=PipelineStage.OFFER_ACCEPTED.value,
            solicitor_email="old@firm.co.uk",
        )
        uow = FakeUnitOfWork([lead])

        await _negotiation(fake_gateway).record_solicitor(
            uow, lead, "Jane Smith", solicitor_firm="Smith & Co"
        )

        assert lead.solicitor_name == "Jane Smith"
        assert lead.solicitor_firm == "Smith & Co"
        assert lead.solicitor_email == "old@firm.co.uk"

    @pytest.mark.asyncio
    async def test_materialise_deal(self, fake_gateway):
        lead = make_offer_lead(
            stage=PipelineStage.OFFER_ACCEPTED.value,
            offer_amount=212_000,
            solicitor_name="Jane Smith",
        )
        uow = FakeUnitOfWork([lead])

        await _negotiation(fake_gateway).materialise_deal(uow, lead)

        assert lead.stage == PipelineStage.READY_FOR_INVESTORS.value
        assert len(uow.deals_log) == 1
        deal = uow.deals_log[0]
        assert lead.deal_id == deal.deal_id
        assert deal.vendor_solicitor_name == "Jane Smith"
        assert deal.postcode == "M1 1AE"
        assert lead.deal_closed_at == FIXED_NOW

    @pytest.mark.asyncio
    async def test_materialise_deal_reuses_existing_deal(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_ACCEPTED.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])
        existing = Deal(deal_id=uuid4(), vendor_lead_id=lead.lead_id, address="x")
        uow.deals.get_by_lead.return_value = existing

        await _negotiation(fake_gateway).materialise_deal(uow, lead)

        uow.deals.create.assert_not_awaited()
        assert lead.deal_id == existing.deal_id
