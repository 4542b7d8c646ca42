"""Typed conversation state and the agent's per-turn output."""

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from vendor_pipeline.schemas.common import (
    ConversationFlow,
    MessageIntent,
    PropertyCondition,
    ReasonForSale,
    UrgencyLevel,
)


class ExtractedData(BaseModel):
    """Facts gathered from the vendor so far.

    Only values that passed ``ExtractionMerger`` validation ever land
    here, so every field is either ``None`` or within range.
    """

    property_address: Optional[str] = None
    asking_price: Optional[float] = None
    condition: Optional[PropertyCondition] = None
    reason_for_selling: Optional[ReasonForSale] = None
    timeline: Optional[UrgencyLevel] = None
    timeline_days: Optional[int] = None
    competing_offers: Optional[bool] = None
    solicitor_name: Optional[str] = None
    solicitor_firm: Optional[str] = None
    solicitor_phone: Optional[str] = None
    solicitor_email: Optional[str] = None


class ConversationState(BaseModel):
    """Snapshot stored in ``VendorLead.conversation_state`` (JSONB).

    ``version`` increases by one on every merge; a merge computed
    against an older snapshot is rejected.
    """

    model_config = ConfigDict(use_enum_values=False)

    version: int = 0
    flow: ConversationFlow = ConversationFlow.initial
    extracted_data: ExtractedData = Field(default_factory=ExtractedData)
    last_question_asked: Optional[str] = None
    messages_exchanged: int = 0
    conversation_complete: bool = False
    opted_out: bool = False

    @classmethod
    def from_column(cls, raw: Optional[Dict[str, Any]]) -> "ConversationState":
        """Load from the JSONB column, tolerating an empty or legacy dict."""
        if not raw:
            return cls()
        return cls.model_validate(raw)

    def to_column(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class AgentTurnPayload(BaseModel):
    """The JSON object the model is instructed to return.

    Deliberately loose: field values are checked one by one by the
    merger, so a single bad value never discards the whole turn.
    """

    model_config = ConfigDict(extra="ignore")

    reply: str
    intent: Optional[str] = None
    extracted: Dict[str, Any] = Field(default_factory=dict)
    motivation_score: Optional[Any] = None
    conversation_complete: bool = False
    next_question: Optional[str] = None


class ParseSuccess(BaseModel):
    ok: Literal[True] = True
    payload: AgentTurnPayload
    strategy: Literal["strict", "fenced", "embedded"]


class ParseFailure(BaseModel):
    ok: Literal[False] = False
    raw: str
    reason: str


ParseResult = Union[ParseSuccess, ParseFailure]


class AgentTurn(BaseModel):
    """One conversation turn produced by ``ConversationAgent.respond``.

    ``extraction`` holds the raw candidate values proposed by the model;
    they become ``ExtractedData`` only after ``ExtractionMerger`` has
    validated them field by field.  ``conversation_complete`` is the
    model's opinion and is advisory only.
    """

    reply: str
    intent: MessageIntent = MessageIntent.other
    extraction: Dict[str, Any] = Field(default_factory=dict)
    motivation_score: Optional[Any] = None
    conversation_complete: bool = False
    next_question: Optional[str] = None
    parse: ParseResult
    tokens_used: int = 0
    fallback: bool = False

    def audit_metadata(self) -> Dict[str, Any]:
        """Metadata stored on the outbound message for later audit."""
        meta: Dict[str, Any] = {
            "intent": self.intent.value,
            "tokens_used": self.tokens_used,
            "fallback": self.fallback,
        }
        if isinstance(self.parse, ParseFailure):
            meta["parse_error"] = self.parse.reason
            meta["raw_response"] = self.parse.raw[:2000]
        else:
            meta["parse_strategy"] = self.parse.strategy
            meta["extracted"] = self.extraction
        return meta
