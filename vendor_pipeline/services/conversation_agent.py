import json
import logging
from typing import Dict, List, Optional, Sequence

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    MAX_REPLY_CHARS,
    NEGOTIATION_STAGES,
    POST_ACCEPTANCE_STAGES,
    REQUIRED_CONVERSATION_FIELDS,
    TARGET_REPLY_CHARS,
)
from vendor_pipeline.core.exceptions import CollaboratorUnavailableError
from vendor_pipeline.core.formatting import truncate_sms
from vendor_pipeline.integrations.inference import InferenceProvider
from vendor_pipeline.schemas.common import MessageDirection, MessageIntent, PipelineStage
from vendor_pipeline.schemas.conversation import (
    AgentTurn,
    ConversationState,
    ParseFailure,
)
from vendor_pipeline.services.extraction import parse_agent_reply

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = """You are a property acquisition specialist texting a UK homeowner who enquired about selling to a cash buyer.

Style:
- Warm, professional and empathetic; never pushy or robotic.
- Keep every reply under {target} characters where possible and never over {limit}.
- Acknowledge what the seller just told you before moving on.
- Ask exactly one question per message.
- Never invent figures and never promise a price.

Reply with JSON only, in exactly this shape:
{{
  "reply": "the SMS text to send",
  "intent": "provide_info|question|accept_offer|reject_offer|counter_offer|not_interested|opt_out|other",
  "extracted": {{
    "property_address": "full address incl. postcode, if given",
    "asking_price": number,
    "condition": "excellent|good|needs_work|needs_modernisation|poor",
    "reason_for_selling": "relocation|financial|divorce|inheritance|downsize|other",
    "timeline": "urgent|quick|moderate|flexible",
    "timeline_days": number,
    "competing_offers": true|false,
    "solicitor_name": "...", "solicitor_firm": "...", "solicitor_phone": "...", "solicitor_email": "..."
  }},
  "motivation_score": 1-10,
  "conversation_complete": true|false,
  "next_question": "the question your reply asks"
}}
Only include extracted fields the seller has actually stated. "intent" classifies the seller's latest message."""

STAGE_GUIDANCE = {
    "discovery": (
        "Goal: learn the property address, asking price, condition, reason for "
        "selling and timeline, one at a time. Judge how motivated they are (1-10). "
        "Once everything is known, thank them and say an offer will follow shortly."
    ),
    "negotiation": (
        "We have made a cash offer of {offer}. Answer questions about it honestly, "
        "and classify whether the seller accepts, rejects or counters it. Do not "
        "change the offer yourself."
    ),
    "post_acceptance": (
        "The seller accepted our offer. Collect their solicitor's name, firm, phone "
        "and email so paperwork can be sent."
    ),
}

QUESTION_BY_FIELD = {
    "property_address": "What's the full address of the property, including the postcode?",
    "asking_price": "What price were you hoping to achieve for it?",
    "condition": "How would you describe its condition, e.g. good, or in need of some work?",
    "reason_for_selling": "May I ask what's prompting the sale?",
    "timeline": "How quickly are you hoping to sell?",
}


def _stage_mode(stage: PipelineStage) -> str:
    if stage in NEGOTIATION_STAGES:
        return "negotiation"
    if stage in POST_ACCEPTANCE_STAGES:
        return "post_acceptance"
    return "discovery"


def _to_intent(value: Optional[str]) -> MessageIntent:
    try:
        return MessageIntent((value or "").strip().lower())
    except ValueError:
        return MessageIntent.other


class ConversationAgent:
    """Drives one SMS conversation turn through an inference provider.

    Never raises for model problems: unparseable output or an inference
    outage produce a canned reply so the seller always hears back.
    """

    def __init__(
        self, provider: InferenceProvider, history_limit: Optional[int] = None
    ) -> None:
        self._provider = provider
        self.history_limit = (
            history_limit if history_limit is not None
            else settings.CONVERSATION_HISTORY_LIMIT
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def opening_message(self, vendor_name: str, property_address: Optional[str]) -> str:
        first_name = (vendor_name or "there").split()[0]
        subject = property_address or "your property"
        return (
            f"Hi {first_name}! Thanks for your enquiry about selling {subject}. "
            "We're cash buyers who can move quickly with no chain. "
            "What's your rough timeline for selling?"
        )

    async def respond(
        self,
        vendor_name: str,
        stage: PipelineStage,
        history: Sequence,
        state: ConversationState,
        latest_message: str,
        offer_amount: Optional[str] = None,
    ) -> AgentTurn:
        system_prompt = self.build_system_prompt(vendor_name, stage, state, offer_amount)
        messages = self._history_messages(history, latest_message)

        try:
            result = await self._provider.respond(messages, system_prompt, json_mode=True)
        except CollaboratorUnavailableError as exc:
            logger.warning("Inference unavailable, sending fallback reply: %s", exc.detail)
            return self._fallback(
                stage, state, ParseFailure(raw="", reason=f"inference unavailable: {exc.detail}")
            )

        parsed = parse_agent_reply(result.text)
        if isinstance(parsed, ParseFailure):
            logger.warning("Unparseable agent reply (%s): %.200s", parsed.reason, parsed.raw)
            turn = self._fallback(stage, state, parsed)
            turn.tokens_used = result.tokens_used
            return turn

        payload = parsed.payload
        reply = truncate_sms(payload.reply, MAX_REPLY_CHARS)
        if not reply:
            turn = self._fallback(stage, state, ParseFailure(raw=result.text, reason="empty reply"))
            turn.tokens_used = result.tokens_used
            return turn

        return AgentTurn(
            reply=reply,
            intent=_to_intent(payload.intent),
            extraction=payload.extracted,
            motivation_score=payload.motivation_score,
            conversation_complete=payload.conversation_complete,
            next_question=payload.next_question,
            parse=parsed,
            tokens_used=result.tokens_used,
        )

    def build_system_prompt(
        self,
        vendor_name: str,
        stage: PipelineStage,
        state: ConversationState,
        offer_amount: Optional[str] = None,
    ) -> str:
        known = state.extracted_data.model_dump(mode="json", exclude_none=True)
        guidance = STAGE_GUIDANCE[_stage_mode(stage)].format(offer=offer_amount or "our offer")
        return (
            BASE_SYSTEM_PROMPT.format(target=TARGET_REPLY_CHARS, limit=MAX_REPLY_CHARS)
            + f"\n\n{guidance}"
            + f"\n\nSeller: {vendor_name}"
            + f"\nFacts gathered so far: {json.dumps(known)}"
            + f"\nLast question you asked: {state.last_question_asked or 'none'}"
        )

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _history_messages(self, history: Sequence, latest_message: str) -> List[Dict[str, str]]:
        recent = list(history)[-self.history_limit:]
        messages = [
            {
                "role": "user" if message.direction == MessageDirection.inbound.value else "assistant",
                "content": message.body,
            }
            for message in recent
        ]
        if not messages or messages[-1] != {"role": "user", "content": latest_message}:
            messages.append({"role": "user", "content": latest_message})
        return messages

    def _fallback(
        self, stage: PipelineStage, state: ConversationState, failure: ParseFailure
    ) -> AgentTurn:
        mode = _stage_mode(stage)
        if mode == "negotiation":
            reply = "Thanks for getting back to us. Would you like to go ahead with our offer?"
        elif mode == "post_acceptance":
            reply = (
                "Thanks! Could you send your solicitor's name, firm, email and phone "
                "number so we can get the paperwork moving?"
            )
        else:
            reply = "Thanks for your message. " + self._next_missing_question(state)
        return AgentTurn(reply=reply, parse=failure, fallback=True)

    @staticmethod
    def _next_missing_question(state: ConversationState) -> str:
        for name in REQUIRED_CONVERSATION_FIELDS:
            if getattr(state.extracted_data, name) is None:
                return QUESTION_BY_FIELD[name]
        return "Is there anything else about the property we should know?"
