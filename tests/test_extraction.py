import pytest

from vendor_pipeline.core.exceptions import ConcurrentUpdateError
from vendor_pipeline.schemas.common import PropertyCondition, ReasonForSale, UrgencyLevel
from vendor_pipeline.schemas.conversation import (
    ConversationState,
    ExtractedData,
    ParseFailure,
    ParseSuccess,
)
from vendor_pipeline.services.extraction import (
    ExtractionMerger,
    MergeOutcome,
    estimate_motivation,
    parse_agent_reply,
)
from tests.fakes import make_lead


class TestParseAgentReply:
    def test_strict_json(self):
        result = parse_agent_reply(
            '{"reply": "Thanks! What price?", "intent": "provide_info", '
            '"extracted": {"condition": "good"}}'
        )
        assert isinstance(result, ParseSuccess)
        assert result.strategy == "strict"
        assert result.payload.reply == "Thanks! What price?"
        assert result.payload.extracted == {"condition": "good"}

    def test_fenced_json(self):
        raw = 'Here you go:\n```json\n{"reply": "Lovely, thanks."}\n```'
        result = parse_agent_reply(raw)
        assert isinstance(result, ParseSuccess)
        assert result.strategy == "fenced"

    def test_embedded_json(self):
        raw = 'Sure. {"reply": "When would you like to sell?", "motivation_score": 6} Done.'
        result = parse_agent_reply(raw)
        assert isinstance(result, ParseSuccess)
        assert result.strategy == "embedded"
        assert result.payload.motivation_score == 6

    def test_camel_case_keys(self):
        result = parse_agent_reply(
            '{"message": "Hi", "extractedData": {"askingPrice": 250000}, '
            '"conversationComplete": true}'
        )
        assert isinstance(result, ParseSuccess)
        assert result.payload.reply == "Hi"
        assert result.payload.extracted == {"asking_price": 250000}
        assert result.payload.conversation_complete is True

    @pytest.mark.parametrize("raw", ["", "I cannot help with that.", '{"intent": "other"}'])
    def test_failure(self, raw):
        result = parse_agent_reply(raw)
        assert isinstance(result, ParseFailure)
        assert result.reason


class TestExtractionMerger:
    def test_valid_fields_kept_invalid_dropped(self):
        outcome = ExtractionMerger(max_exchanges=16).merge(
            ConversationState(),
            {
                "asking_price": "£250k",
                "condition": "Needs Work",
                "timeline_days": 9999,
                "solicitor_email": "not-an-email",
                "unknown_field": "ignored",
            },
        )
        data = outcome.state.extracted_data
        assert data.asking_price == 250_000
        assert data.condition == PropertyCondition.needs_work
        assert data.timeline_days is None
        assert set(outcome.rejected) == {"timeline_days", "solicitor_email"}
        assert "unknown_field" not in outcome.accepted

    def test_price_out_of_range_rejected(self):
        outcome = ExtractionMerger().merge(ConversationState(), {"asking_price": 5})
        assert outcome.state.extracted_data.asking_price is None
        assert "asking_price" in outcome.rejected

    def test_earlier_facts_survive(self):
        state = ConversationState(extracted_data=ExtractedData(asking_price=200_000))
        outcome = ExtractionMerger().merge(state, {"condition": "good"})
        assert outcome.state.extracted_data.asking_price == 200_000
        assert outcome.state.extracted_data.condition == PropertyCondition.good

    def test_invalid_value_keeps_known_condition(self):
        state = ConversationState(
            extracted_data=ExtractedData(condition=PropertyCondition.good)
        )
        outcome = ExtractionMerger().merge(state, {"condition": "destroyed"})
        assert outcome.state.extracted_data.condition == PropertyCondition.good
        assert "condition" in outcome.rejected

    def test_version_bumped_and_checked(self):
        merger = ExtractionMerger()
        state = ConversationState(version=3)
        outcome = merger.merge(state, {}, expected_version=3, exchanged=2)
        assert outcome.state.version == 4
        assert outcome.state.messages_exchanged == 2
        with pytest.raises(ConcurrentUpdateError):
            merger.merge(outcome.state, {}, expected_version=3)

    def test_motivation_validated(self):
        merger = ExtractionMerger()
        assert merger.merge(ConversationState(), {}, motivation="7").motivation_score == 7
        outcome = merger.merge(ConversationState(), {}, motivation=14)
        assert outcome.motivation_score is None
        assert "motivation_score" in outcome.rejected

    def test_complete_when_required_fields_known(self):
        outcome = ExtractionMerger().merge(
            ConversationState(),
            {
                "property_address": "12 High Street, Manchester M1 1AE",
                "asking_price": 250000,
                "condition": "needs_work",
                "reason_for_selling": "relocation",
                "timeline": "quick",
            },
        )
        assert outcome.state.conversation_complete is True

    def test_complete_after_max_exchanges(self):
        state = ConversationState(messages_exchanged=14)
        outcome = ExtractionMerger(max_exchanges=16).merge(state, {}, exchanged=2)
        assert outcome.state.conversation_complete is True

    def test_not_complete_with_missing_fields(self):
        outcome = ExtractionMerger().merge(ConversationState(), {"asking_price": 250000})
        assert outcome.state.conversation_complete is False


class TestApplyToLead:
    def test_copies_facts_to_columns(self):
        lead = make_lead()
        state = ConversationState(
            version=2,
            extracted_data=ExtractedData(
                property_address="4 Mill Lane, Leeds LS1 4AB",
                asking_price=180_000,
                condition=PropertyCondition.poor,
                reason_for_selling=ReasonForSale.financial,
                timeline=UrgencyLevel.urgent,
            ),
        )
        ExtractionMerger.apply_to_lead(lead, MergeOutcome(state=state))

        assert lead.property_postcode == "LS1 4AB"
        assert lead.asking_price == 180_000
        assert lead.condition == "poor"
        assert lead.urgency_level == "urgent"
        assert lead.conversation_state["version"] == 2
        # no model score: the heuristic fills in (5 + 3 + 3, capped at 10)
        assert lead.motivation_score == 10

    def test_model_score_wins_over_heuristic(self):
        lead = make_lead(motivation_score=4)
        ExtractionMerger.apply_to_lead(
            lead, MergeOutcome(state=ConversationState(), motivation_score=8)
        )
        assert lead.motivation_score == 8


class TestEstimateMotivation:
    def test_no_signal(self):
        assert estimate_motivation(ExtractedData()) is None

    def test_competing_offers_lower_score(self):
        data = ExtractedData(timeline=UrgencyLevel.flexible, competing_offers=True)
        assert estimate_motivation(data) == 3

    def test_short_timeline_days(self):
        data = ExtractedData(reason_for_selling=ReasonForSale.downsize, timeline_days=10)
        assert estimate_motivation(data) == 8
