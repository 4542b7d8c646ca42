import json

import pytest

from vendor_pipeline.core.exceptions import ConcurrentUpdateError
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.schemas.conversation import ConversationState
from vendor_pipeline.services.conversation_agent import ConversationAgent
from vendor_pipeline.services.conversation_service import (
    CLOSED_ACKNOWLEDGEMENT,
    VALIDATION_HOLDING_REPLY,
    ConversationService,
    is_opt_out,
)
from vendor_pipeline.services.extraction import ExtractionMerger
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService
from vendor_pipeline.services.offer_engine import OfferEngine
from tests.fakes import (
    FIXED_NOW,
    FakeGateway,
    FakeInference,
    FakeUnitOfWork,
    make_lead,
    make_offer_lead,
)


def _reply(reply: str, intent: str = "provide_info", **extra) -> str:
    return json.dumps({"reply": reply, "intent": intent, **extra})


def _service(provider, gateway: FakeGateway) -> ConversationService:
    messenger = LeadMessenger(gateway, from_number="+441615550000")
    negotiation = NegotiationService(messenger, OfferEngine(), clock=lambda: FIXED_NOW)
    return ConversationService(
        ConversationAgent(provider, history_limit=10),
        ExtractionMerger(max_exchanges=16),
        messenger,
        negotiation,
        history_limit=10,
    )


class TestOptOut:
    @pytest.mark.parametrize("body", ["STOP", " stop ", "Unsubscribe.", "quit!"])
    def test_keywords(self, body):
        assert is_opt_out(body) is True

    def test_keyword_inside_sentence_is_not_opt_out(self):
        assert is_opt_out("please don't stop the offer") is False

    @pytest.mark.asyncio
    async def test_opt_out_closes_conversation(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference()

        outcome = await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "STOP")

        assert outcome.action == "opted_out"
        assert lead.stage == PipelineStage.DEAD_LEAD.value
        assert ConversationState.from_column(lead.conversation_state).opted_out is True
        assert fake_gateway.sent == []
        assert provider.calls == []
        assert "opted_out" in uow.event_types()

    @pytest.mark.asyncio
    async def test_opt_out_with_open_offer_keeps_stage(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_MADE.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])

        await _service(FakeInference(), fake_gateway).handle_turn(uow, lead.lead_id, "stop")

        assert lead.stage == PipelineStage.OFFER_MADE.value
        assert ConversationState.from_column(lead.conversation_state).opted_out is True

    @pytest.mark.asyncio
    async def test_opted_out_seller_is_ignored(self, fake_gateway):
        lead = make_lead(
            stage=PipelineStage.OFFER_MADE.value,
            conversation_state=ConversationState(opted_out=True).to_column(),
        )
        uow = FakeUnitOfWork([lead])
        outcome = await _service(FakeInference(), fake_gateway).handle_turn(
            uow, lead.lead_id, "hello again"
        )
        assert outcome.action == "ignored"
        assert fake_gateway.sent == []


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_reply_and_merge(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(
            _reply(
                "Thanks! How would you describe its condition?",
                extracted={"asking_price": 250000},
                motivation_score=6,
            )
        )

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Looking for 250k"
        )

        assert outcome.action == "replied"
        assert lead.stage == PipelineStage.AI_CONVERSATION.value
        assert lead.asking_price == 250_000
        assert lead.motivation_score == 6
        state = ConversationState.from_column(lead.conversation_state)
        assert state.version == 1
        assert state.messages_exchanged == 2
        assert fake_gateway.sent == [(lead.vendor_phone, outcome.reply)]
        assert uow.outbound()[0].ai_generated is True

    @pytest.mark.asyncio
    async def test_first_reply_moves_new_lead_into_conversation(self, fake_gateway):
        lead = make_lead()
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("Hi! Where is the property?"))

        await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "Hi")

        assert lead.stage == PipelineStage.AI_CONVERSATION.value

    @pytest.mark.asyncio
    async def test_complete_conversation_goes_to_validation(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(
            _reply(
                "Thanks, we'll be in touch with an offer shortly.",
                extracted={
                    "property_address": "12 High Street, Manchester M1 1AE",
                    "asking_price": 250000,
                    "condition": "needs_work",
                    "reason_for_selling": "relocation",
                    "timeline": "quick",
                },
            )
        )

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Need to move for work"
        )

        assert outcome.action == "completed"
        assert lead.stage == PipelineStage.DEAL_VALIDATION.value
        assert lead.property_postcode == "M1 1AE"
        assert len(fake_gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_model_cannot_complete_conversation_on_its_own(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("All done!", conversation_complete=True))

        await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "ok")

        assert lead.stage == PipelineStage.AI_CONVERSATION.value

    @pytest.mark.asyncio
    async def test_not_interested_closes_lead(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("No problem, all the best.", intent="not_interested"))

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Not selling any more"
        )

        assert outcome.action == "closed"
        assert lead.stage == PipelineStage.DEAD_LEAD.value

    @pytest.mark.asyncio
    async def test_stage_change_during_inference_is_a_conflict(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.AI_CONVERSATION.value)
        uow = FakeUnitOfWork([lead])

        class RacingInference(FakeInference):
            async def respond(self, history, system_prompt, json_mode=True):
                lead.stage = PipelineStage.DEAL_VALIDATION.value
                return await super().respond(history, system_prompt, json_mode)

        provider = RacingInference(_reply("Thanks"))
        with pytest.raises(ConcurrentUpdateError):
            await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "hi")
        assert fake_gateway.sent == []


class TestNegotiationTurns:
    @pytest.mark.asyncio
    async def test_acceptance(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_MADE.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("Brilliant!", intent="accept_offer"))

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Yes happy with that"
        )

        assert outcome.action == "accepted"
        assert lead.stage == PipelineStage.OFFER_ACCEPTED.value
        assert lead.offer_accepted_at == FIXED_NOW
        assert len(fake_gateway.sent) == 1
        assert "solicitor" in fake_gateway.sent[0][1]

    @pytest.mark.asyncio
    async def test_first_rejection_sends_objection_and_schedules_retry(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_MADE.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("Understood.", intent="reject_offer"))

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Too low"
        )

        assert outcome.action == "rejected"
        assert lead.stage == PipelineStage.VIDEO_SENT.value
        assert lead.rejection_reason == "Too low"
        assert lead.retry_count == 0
        assert lead.next_retry_at is not None
        assert len(fake_gateway.sent) == 1

    @pytest.mark.asyncio
    async def test_rejection_during_retries_keeps_schedule(self, fake_gateway):
        due = FIXED_NOW.replace(day=10)
        lead = make_offer_lead(
            stage=PipelineStage.RETRY_1.value,
            offer_amount=212_000,
            retry_count=1,
            next_retry_at=due,
        )
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(_reply("Okay, I'll leave it with you.", intent="reject_offer"))

        await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "Still no")

        assert lead.stage == PipelineStage.RETRY_1.value
        assert lead.next_retry_at == due
        assert "offer_rejected_again" in uow.event_types()
        assert len(fake_gateway.sent) == 1


class TestCannedReplies:
    @pytest.mark.asyncio
    async def test_closed_lead_gets_acknowledgement(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.DEAD_LEAD.value)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference()

        outcome = await _service(provider, fake_gateway).handle_turn(uow, lead.lead_id, "hello?")

        assert outcome.reply == CLOSED_ACKNOWLEDGEMENT
        assert provider.calls == []
        assert lead.stage == PipelineStage.DEAD_LEAD.value

    @pytest.mark.asyncio
    async def test_validation_stage_gets_holding_reply(self, fake_gateway):
        lead = make_lead(stage=PipelineStage.DEAL_VALIDATION.value)
        uow = FakeUnitOfWork([lead])

        outcome = await _service(FakeInference(), fake_gateway).handle_turn(
            uow, lead.lead_id, "any news?"
        )

        assert outcome.reply == VALIDATION_HOLDING_REPLY


class TestPostAcceptance:
    @pytest.mark.asyncio
    async def test_solicitor_details_captured(self, fake_gateway):
        lead = make_offer_lead(stage=PipelineStage.OFFER_ACCEPTED.value, offer_amount=212_000)
        uow = FakeUnitOfWork([lead])
        provider = FakeInference(
            _reply(
                "Thanks, we'll send the paperwork to Jane.",
                extracted={
                    "solicitor_name": "Jane Smith",
                    "solicitor_firm": "Smith & Co",
                    "solicitor_email": "Jane@SmithLaw.co.uk",
                    "solicitor_phone": "not a phone",
                },
            )
        )

        outcome = await _service(provider, fake_gateway).handle_turn(
            uow, lead.lead_id, "Jane Smith at Smith & Co, jane@smithlaw.co.uk"
        )

        assert outcome.action == "replied"
        assert lead.stage == PipelineStage.OFFER_ACCEPTED.value
        assert lead.solicitor_name == "Jane Smith"
        assert lead.solicitor_firm == "Smith & Co"
        assert lead.solicitor_email == "jane@smithlaw.co.uk"
        assert lead.solicitor_phone is None
        metadata = uow.outbound()[0].extraction_metadata
        assert "solicitor_phone" in metadata["rejected_fields"]
