from typing import Dict, FrozenSet, List, Optional, Tuple

from vendor_pipeline.schemas.common import (
    PipelineStage,
    PropertyCondition,
    ReasonForSale,
    UrgencyLevel,
)

S = PipelineStage

PIPELINE_STAGES: FrozenSet[str] = frozenset(s.value for s in PipelineStage)

STAGE_CHECK_CLAUSE: str = (
    f"stage IN ({', '.join(repr(s.value) for s in PipelineStage)})"
)

# Terminal stages: no further transitions allowed
TERMINAL_STAGES: FrozenSet[PipelineStage] = frozenset(
    {S.READY_FOR_INVESTORS, S.DEAD_LEAD}
)

ALLOWED_TRANSITIONS: Dict[PipelineStage, List[PipelineStage]] = {
    S.NEW_LEAD: [S.AI_CONVERSATION],
    S.AI_CONVERSATION: [S.DEAL_VALIDATION, S.DEAD_LEAD],
    S.DEAL_VALIDATION: [S.OFFER_MADE, S.DEAD_LEAD],
    S.OFFER_MADE: [S.OFFER_ACCEPTED, S.VIDEO_SENT],
    S.VIDEO_SENT: [S.OFFER_ACCEPTED, S.RETRY_1, S.DEAD_LEAD],
    S.RETRY_1: [S.OFFER_ACCEPTED, S.RETRY_2, S.DEAD_LEAD],
    S.RETRY_2: [S.OFFER_ACCEPTED, S.RETRY_3, S.DEAD_LEAD],
    S.RETRY_3: [S.OFFER_ACCEPTED, S.DEAD_LEAD],
    S.OFFER_ACCEPTED: [S.PAPERWORK_SENT, S.READY_FOR_INVESTORS],
    S.PAPERWORK_SENT: [S.READY_FOR_INVESTORS],
    S.READY_FOR_INVESTORS: [],  # terminal
    S.DEAD_LEAD: [],  # terminal
}

# Stage reached after sending retry N
RETRY_STAGE_BY_NUMBER: Dict[int, PipelineStage] = {
    1: S.RETRY_1,
    2: S.RETRY_2,
    3: S.RETRY_3,
}

# Stages from which the next scheduled retry may be sent
RETRY_SOURCE_STAGES: FrozenSet[PipelineStage] = frozenset(
    {S.VIDEO_SENT, S.RETRY_1, S.RETRY_2}
)

# Stages in which a seller may still accept the standing offer
NEGOTIATION_STAGES: FrozenSet[PipelineStage] = frozenset(
    {S.OFFER_MADE, S.VIDEO_SENT, S.RETRY_1, S.RETRY_2, S.RETRY_3}
)

# Stages in which an unanswered inbound message gets an agent reply
CONVERSATIONAL_STAGES: FrozenSet[PipelineStage] = frozenset(
    {S.AI_CONVERSATION} | NEGOTIATION_STAGES | {S.OFFER_ACCEPTED}
)

POST_ACCEPTANCE_STAGES: FrozenSet[PipelineStage] = frozenset(
    {S.OFFER_ACCEPTED, S.PAPERWORK_SENT}
)

# Targets of a direct operator stage move. Offers, acceptances and
# retries only happen through the negotiation flow that records them.
OPERATOR_STAGE_TARGETS: FrozenSet[PipelineStage] = frozenset(
    {S.DEAL_VALIDATION, S.PAPERWORK_SENT, S.DEAD_LEAD}
)


# ---------------------------------------------------------------------------
# Underwriting
# ---------------------------------------------------------------------------

# Legal, survey and stamp-duty approximation, as a fraction of price
TRANSACTION_COST_RATE: float = 0.05

REFURB_BASE_COSTS: Dict[PropertyCondition, int] = {
    PropertyCondition.excellent: 0,
    PropertyCondition.good: 5_000,
    PropertyCondition.needs_work: 15_000,
    PropertyCondition.needs_modernisation: 25_000,
    PropertyCondition.poor: 40_000,
}
REFURB_UNKNOWN_CONDITION_COST: int = 20_000

FLAT_PROPERTY_TYPES: FrozenSet[str] = frozenset({"flat", "apartment"})
EXCLUDED_PROPERTY_TYPES: FrozenSet[str] = frozenset({"land", "commercial", "parking"})

DEFAULT_VALUATION_PROPERTY_TYPE: str = "house"
DEFAULT_VALUATION_BEDROOMS: int = 3
DEFAULT_VALUATION_BATHROOMS: int = 1
SQ_METRES_PER_BEDROOM: int = 50
SQ_FEET_PER_SQ_METRE: float = 10.764


def bedroom_refurb_multiplier(bedrooms: Optional[int]) -> float:
    """Scale refurb cost down for small homes and up for 3+ bedrooms."""
    if not bedrooms:
        return 1.0
    if bedrooms <= 1:
        return 0.7
    if bedrooms >= 4:
        return 1.3
    if bedrooms >= 3:
        return 1.15
    return 1.0


def property_type_refurb_multiplier(property_type: Optional[str]) -> float:
    if not property_type:
        return 1.0
    kind = property_type.strip().lower()
    if kind in FLAT_PROPERTY_TYPES:
        return 0.9
    if kind == "detached":
        return 1.1
    return 1.0


# ---------------------------------------------------------------------------
# Offer pricing
# ---------------------------------------------------------------------------

# (minimum motivation score, bonus), evaluated highest first
MOTIVATION_BONUS_TIERS: Tuple[Tuple[int, int], ...] = (
    (9, 10_000),
    (7, 7_000),
    (5, 3_000),
)
LOW_MOTIVATION_BONUS: int = 1_000

# (maximum asking/market ratio, bonus), evaluated lowest ratio first
ATTRACTIVENESS_BONUS_TIERS: Tuple[Tuple[float, int], ...] = (
    (0.75, 5_000),
    (0.85, 2_000),
)


# ---------------------------------------------------------------------------
# Conversation extraction
# ---------------------------------------------------------------------------

VALID_CONDITIONS: FrozenSet[str] = frozenset(c.value for c in PropertyCondition)
VALID_REASONS: FrozenSet[str] = frozenset(r.value for r in ReasonForSale)
VALID_TIMELINES: FrozenSet[str] = frozenset(u.value for u in UrgencyLevel)

ASKING_PRICE_RANGE: Tuple[int, int] = (10_000, 10_000_000)
TIMELINE_DAYS_RANGE: Tuple[int, int] = (0, 730)
MOTIVATION_SCORE_RANGE: Tuple[int, int] = (1, 10)
ADDRESS_LENGTH_RANGE: Tuple[int, int] = (5, 255)

# Facts that must all be known before a conversation is complete
REQUIRED_CONVERSATION_FIELDS: Tuple[str, ...] = (
    "property_address",
    "asking_price",
    "condition",
    "reason_for_selling",
    "timeline",
)

# Carrier-standard opt-out keywords (whole-message match)
OPT_OUT_KEYWORDS: FrozenSet[str] = frozenset(
    {"stop", "stopall", "unsubscribe", "cancel", "end", "quit"}
)

TARGET_REPLY_CHARS: int = 160
MAX_REPLY_CHARS: int = 320
