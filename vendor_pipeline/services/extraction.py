"""Parse the agent's JSON reply and merge extracted facts into state.

The model is asked for JSON only but does not always comply, so parsing
falls back from strict JSON to a fenced ```json block and finally to the
first decodable object embedded in free text.  Extracted values are then
checked one field at a time; anything out of range is logged and
dropped while the valid fields are kept.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, Optional, Tuple

from pydantic import BaseModel, EmailStr, Field, TypeAdapter, ValidationError

from vendor_pipeline.core.config import settings
from vendor_pipeline.core.constants import (
    ADDRESS_LENGTH_RANGE,
    ASKING_PRICE_RANGE,
    MOTIVATION_SCORE_RANGE,
    REQUIRED_CONVERSATION_FIELDS,
    TIMELINE_DAYS_RANGE,
    VALID_CONDITIONS,
    VALID_REASONS,
    VALID_TIMELINES,
)
from vendor_pipeline.core.exceptions import ConcurrentUpdateError
from vendor_pipeline.core.formatting import extract_postcode, normalize_uk_phone, parse_price
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import ReasonForSale, UrgencyLevel
from vendor_pipeline.schemas.conversation import (
    AgentTurnPayload,
    ConversationState,
    ExtractedData,
    ParseFailure,
    ParseResult,
    ParseSuccess,
)

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_EMAIL_ADAPTER = TypeAdapter(EmailStr)

# Keys the model sometimes returns in camelCase
_KEY_ALIASES = {
    "message": "reply",
    "extractedData": "extracted",
    "extracted_data": "extracted",
    "motivationScore": "motivation_score",
    "conversationComplete": "conversation_complete",
    "nextQuestion": "next_question",
    "propertyAddress": "property_address",
    "askingPrice": "asking_price",
    "reasonForSelling": "reason_for_selling",
    "timelineDays": "timeline_days",
    "competingOffers": "competing_offers",
    "solicitorName": "solicitor_name",
    "solicitorFirm": "solicitor_firm",
    "solicitorPhone": "solicitor_phone",
    "solicitorEmail": "solicitor_email",
}


def _normalise_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_KEY_ALIASES.get(key, key): value for key, value in data.items()}


def _to_payload(data: Any) -> Optional[AgentTurnPayload]:
    if not isinstance(data, dict):
        return None
    data = _normalise_keys(data)
    if isinstance(data.get("extracted"), dict):
        data["extracted"] = _normalise_keys(data["extracted"])
    elif "extracted" in data:
        data["extracted"] = {}
    try:
        return AgentTurnPayload.model_validate(data)
    except ValidationError:
        return None


def parse_agent_reply(raw: str) -> ParseResult:
    """Turn raw model output into a typed parse result."""
    text = (raw or "").strip()
    if not text:
        return ParseFailure(raw=raw or "", reason="empty response")

    try:
        payload = _to_payload(json.loads(text))
        if payload is not None:
            return ParseSuccess(payload=payload, strategy="strict")
    except json.JSONDecodeError:
        pass

    for match in _FENCED_RE.finditer(text):
        try:
            payload = _to_payload(json.loads(match.group(1)))
        except json.JSONDecodeError:
            continue
        if payload is not None:
            return ParseSuccess(payload=payload, strategy="fenced")

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        payload = _to_payload(obj)
        if payload is not None:
            return ParseSuccess(payload=payload, strategy="embedded")
        start = text.find("{", start + 1)

    return ParseFailure(raw=text, reason="no JSON object with a 'reply' field found")


# ---------------------------------------------------------------------------
# Field validators: return the cleaned value or raise ValueError
# ---------------------------------------------------------------------------


def _in_range(value: float, bounds: Tuple[float, float], name: str) -> None:
    low, high = bounds
    if not low <= value <= high:
        raise ValueError(f"{name} {value} outside {low}-{high}")


def _text(min_len: int, max_len: int) -> Callable[[Any], str]:
    def check(value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("not a string")
        cleaned = " ".join(value.split())
        _in_range(len(cleaned), (min_len, max_len), "length")
        return cleaned

    return check


def _choice(allowed) -> Callable[[Any], str]:
    def check(value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("not a string")
        cleaned = value.strip().lower().replace(" ", "_").replace("-", "_")
        if cleaned not in allowed:
            raise ValueError(f"'{value}' not one of {sorted(allowed)}")
        return cleaned

    return check


def _integer(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not a number")
    if isinstance(value, str):
        value = value.strip()
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"{value} is not a whole number")
    return int(number)


def _asking_price(value: Any) -> float:
    price = parse_price(value)
    if price is None:
        raise ValueError(f"unrecognised price {value!r}")
    _in_range(price, ASKING_PRICE_RANGE, "asking_price")
    return price


def _timeline_days(value: Any) -> int:
    days = _integer(value)
    _in_range(days, TIMELINE_DAYS_RANGE, "timeline_days")
    return days


def _boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"{value!r} is not a boolean")


def _phone(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("not a string")
    phone = normalize_uk_phone(value)
    if not 8 <= len(phone) <= 16:
        raise ValueError(f"implausible phone number {value!r}")
    return phone


def _email(value: Any) -> str:
    try:
        return str(_EMAIL_ADAPTER.validate_python(value)).lower()
    except ValidationError as exc:
        raise ValueError(str(exc.errors()[0]["msg"])) from exc


def validate_motivation(value: Any) -> int:
    score = _integer(value)
    _in_range(score, MOTIVATION_SCORE_RANGE, "motivation_score")
    return score


FIELD_VALIDATORS: Dict[str, Callable[[Any], Any]] = {
    "property_address": _text(*ADDRESS_LENGTH_RANGE),
    "asking_price": _asking_price,
    "condition": _choice(VALID_CONDITIONS),
    "reason_for_selling": _choice(VALID_REASONS),
    "timeline": _choice(VALID_TIMELINES),
    "timeline_days": _timeline_days,
    "competing_offers": _boolean,
    "solicitor_name": _text(2, 200),
    "solicitor_firm": _text(2, 200),
    "solicitor_phone": _phone,
    "solicitor_email": _email,
}


def estimate_motivation(data: ExtractedData) -> Optional[int]:
    """Heuristic motivation score for when the model gives none."""
    if data.timeline is None and data.reason_for_selling is None:
        return None
    score = 5
    score += {
        UrgencyLevel.urgent: 3,
        UrgencyLevel.quick: 2,
        UrgencyLevel.moderate: 1,
    }.get(data.timeline, 0)
    score += {
        ReasonForSale.financial: 3,
        ReasonForSale.divorce: 3,
        ReasonForSale.relocation: 2,
        ReasonForSale.inheritance: 2,
        ReasonForSale.downsize: 1,
    }.get(data.reason_for_selling, 0)
    if data.competing_offers:
        score -= 2
    if data.timeline_days is not None:
        if data.timeline_days <= 14:
            score += 2
        elif data.timeline_days <= 30:
            score += 1
    low, high = MOTIVATION_SCORE_RANGE
    return max(low, min(high, score))


class MergeOutcome(BaseModel):
    state: ConversationState
    accepted: Dict[str, Any] = Field(default_factory=dict)
    rejected: Dict[str, str] = Field(default_factory=dict)
    motivation_score: Optional[int] = None


class ExtractionMerger:
    def __init__(self, max_exchanges: Optional[int] = None) -> None:
        self.max_exchanges = (
            max_exchanges if max_exchanges is not None
            else settings.CONVERSATION_MAX_EXCHANGES
        )

    def merge(
        self,
        state: ConversationState,
        candidates: Dict[str, Any],
        motivation: Any = None,
        expected_version: Optional[int] = None,
        exchanged: int = 0,
    ) -> MergeOutcome:
        """Return a new state with every valid candidate applied.

        *expected_version* is the state version the candidates were
        produced from; a mismatch means another turn merged first.
        """
        if expected_version is not None and state.version != expected_version:
            raise ConcurrentUpdateError(
                f"Conversation state moved from version {expected_version} "
                f"to {state.version}"
            )

        extracted = state.extracted_data.model_dump()
        accepted: Dict[str, Any] = {}
        rejected: Dict[str, str] = {}
        for key, value in candidates.items():
            validator = FIELD_VALIDATORS.get(key)
            if validator is None or value is None or value == "":
                continue
            try:
                cleaned = validator(value)
            except (TypeError, ValueError) as exc:
                rejected[key] = str(exc)
                logger.warning("Discarding extracted %s=%r: %s", key, value, exc)
                continue
            extracted[key] = cleaned
            accepted[key] = cleaned

        score = None
        if motivation is not None:
            try:
                score = validate_motivation(motivation)
            except (TypeError, ValueError) as exc:
                rejected["motivation_score"] = str(exc)
                logger.warning("Discarding motivation score %r: %s", motivation, exc)

        new_data = ExtractedData.model_validate(extracted)
        messages = state.messages_exchanged + exchanged
        new_state = state.model_copy(
            update={
                "version": state.version + 1,
                "extracted_data": new_data,
                "messages_exchanged": messages,
            }
        )
        new_state.conversation_complete = self.is_complete(new_state)
        return MergeOutcome(
            state=new_state, accepted=accepted, rejected=rejected, motivation_score=score
        )

    def is_complete(self, state: ConversationState) -> bool:
        data = state.extracted_data
        if all(getattr(data, name) is not None for name in REQUIRED_CONVERSATION_FIELDS):
            return True
        return state.messages_exchanged >= self.max_exchanges

    @staticmethod
    def apply_to_lead(
        lead: VendorLead, outcome: MergeOutcome
    ) -> None:
        """Copy merged facts onto the lead's columns."""
        data = outcome.state.extracted_data
        lead.conversation_state = outcome.state.to_column()
        if data.property_address:
            lead.property_address = data.property_address
            lead.property_postcode = (
                extract_postcode(data.property_address) or lead.property_postcode
            )
        if data.asking_price is not None:
            lead.asking_price = data.asking_price
        if data.condition is not None:
            lead.condition = data.condition.value
        if data.reason_for_selling is not None:
            lead.reason_for_selling = data.reason_for_selling.value
        if data.timeline is not None:
            lead.urgency_level = data.timeline.value
        if data.timeline_days is not None:
            lead.timeline_days = data.timeline_days
        if data.competing_offers is not None:
            lead.competing_offers = data.competing_offers
        for name in ("solicitor_name", "solicitor_firm", "solicitor_phone", "solicitor_email"):
            value = getattr(data, name)
            if value:
                setattr(lead, name, value)

        if outcome.motivation_score is not None:
            lead.motivation_score = outcome.motivation_score
        elif lead.motivation_score is None:
            lead.motivation_score = estimate_motivation(data)
