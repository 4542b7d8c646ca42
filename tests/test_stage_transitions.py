import pytest

from vendor_pipeline.core.constants import (
    ALLOWED_TRANSITIONS,
    CONVERSATIONAL_STAGES,
    NEGOTIATION_STAGES,
    PIPELINE_STAGES,
    RETRY_STAGE_BY_NUMBER,
    STAGE_CHECK_CLAUSE,
    TERMINAL_STAGES,
)
from vendor_pipeline.core.exceptions import (
    ImmutableMessageError,
    InvalidStageTransitionError,
)
from vendor_pipeline.models.listeners import block_message_updates
from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.services.stage_transitions import (
    StageTransitionValidator,
    transition_lead,
)
from tests.fakes import FakeUnitOfWork, make_lead

S = PipelineStage


class TestStageGraph:
    """Verify that the stage graph and the enum stay in sync."""

    def test_every_stage_has_transition_entry(self):
        for stage in PipelineStage:
            assert stage in ALLOWED_TRANSITIONS

    def test_stage_values_match_enum(self):
        assert PIPELINE_STAGES == {stage.value for stage in PipelineStage}
        for stage in PipelineStage:
            assert f"'{stage.value}'" in STAGE_CHECK_CLAUSE

    def test_terminal_stages_have_no_exits(self):
        for stage in TERMINAL_STAGES:
            assert ALLOWED_TRANSITIONS[stage] == []

    def test_every_non_terminal_stage_has_an_exit(self):
        for stage in set(PipelineStage) - TERMINAL_STAGES:
            assert ALLOWED_TRANSITIONS[stage]

    def test_every_stage_reachable_from_new_lead(self):
        seen, frontier = {S.NEW_LEAD}, [S.NEW_LEAD]
        while frontier:
            for nxt in ALLOWED_TRANSITIONS[frontier.pop()]:
                if nxt not in seen:
                    seen.add(nxt)
                    frontier.append(nxt)
        assert seen == set(PipelineStage)

    def test_offer_can_be_accepted_from_any_negotiation_stage(self):
        for stage in NEGOTIATION_STAGES:
            assert S.OFFER_ACCEPTED in ALLOWED_TRANSITIONS[stage]

    def test_open_offer_cannot_be_closed_directly(self):
        """A first offer is only left by acceptance or rejection."""
        assert S.DEAD_LEAD not in ALLOWED_TRANSITIONS[S.OFFER_MADE]

    def test_retry_stages_are_sequential(self):
        assert RETRY_STAGE_BY_NUMBER == {1: S.RETRY_1, 2: S.RETRY_2, 3: S.RETRY_3}
        assert S.RETRY_2 in ALLOWED_TRANSITIONS[S.RETRY_1]
        assert S.RETRY_3 not in ALLOWED_TRANSITIONS[S.RETRY_1]

    def test_terminal_stages_are_not_conversational(self):
        assert not CONVERSATIONAL_STAGES & TERMINAL_STAGES


class TestStageTransitionValidator:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "current, new",
        [
            ("NEW_LEAD", S.AI_CONVERSATION),
            ("AI_CONVERSATION", S.DEAL_VALIDATION),
            ("DEAL_VALIDATION", S.OFFER_MADE),
            ("OFFER_MADE", S.VIDEO_SENT),
            ("RETRY_3", S.DEAD_LEAD),
            ("OFFER_ACCEPTED", S.READY_FOR_INVESTORS),
        ],
    )
    async def test_allowed(self, current, new):
        await StageTransitionValidator.validate(current, new)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "current, new",
        [
            ("NEW_LEAD", S.OFFER_MADE),
            ("DEAD_LEAD", S.AI_CONVERSATION),
            ("READY_FOR_INVESTORS", S.DEAD_LEAD),
            ("VIDEO_SENT", S.RETRY_2),
            ("OFFER_MADE", S.OFFER_MADE),
        ],
    )
    async def test_rejected(self, current, new):
        with pytest.raises(InvalidStageTransitionError):
            await StageTransitionValidator.validate(current, new)


class TestTransitionLead:
    @pytest.mark.asyncio
    async def test_applies_and_audits(self):
        lead = make_lead()
        uow = FakeUnitOfWork([lead])

        await transition_lead(
            uow, lead, S.AI_CONVERSATION, actor="vendor", reason="replied",
            details={"channel": "sms"},
        )

        assert lead.stage == "AI_CONVERSATION"
        event = uow.events_log[0]
        assert event["event_type"] == "stage_changed"
        assert event["from_stage"] == "NEW_LEAD"
        assert event["to_stage"] == "AI_CONVERSATION"
        assert event["actor"] == "vendor"
        assert event["details"] == {"channel": "sms", "reason": "replied"}

    @pytest.mark.asyncio
    async def test_invalid_move_changes_nothing(self):
        lead = make_lead(stage="DEAD_LEAD")
        uow = FakeUnitOfWork([lead])

        with pytest.raises(InvalidStageTransitionError):
            await transition_lead(uow, lead, S.AI_CONVERSATION)

        assert lead.stage == "DEAD_LEAD"
        uow.leads.set_stage.assert_not_awaited()
        assert uow.events_log == []


class TestMessageLog:
    def test_stored_messages_cannot_be_updated(self):
        message = SMSMessage(direction="outbound", body="Hi")
        with pytest.raises(ImmutableMessageError):
            block_message_updates(None, None, message)
