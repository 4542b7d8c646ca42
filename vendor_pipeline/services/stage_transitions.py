import logging
from typing import Any, Dict, Optional

from vendor_pipeline.core.constants import ALLOWED_TRANSITIONS
from vendor_pipeline.core.exceptions import InvalidStageTransitionError
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import PipelineStage

logger = logging.getLogger(__name__)


class StageTransitionValidator:
    """Checks stage moves against the pipeline graph.

    The ``before_flush`` listener repeats this check at the ORM level;
    this one runs first so callers get a clear error before touching
    anything else.
    """

    @staticmethod
    async def validate(current_stage: str, new_stage: PipelineStage) -> None:
        allowed = ALLOWED_TRANSITIONS.get(PipelineStage(current_stage), [])
        if new_stage not in allowed:
            raise InvalidStageTransitionError(
                f"Cannot transition from {current_stage} to {new_stage.value}"
            )


async def transition_lead(
    uow,
    lead: VendorLead,
    to_stage: PipelineStage,
    actor: str = "pipeline",
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Validate, apply and audit one stage change (not committed)."""
    from_stage = lead.stage
    await StageTransitionValidator.validate(from_stage, to_stage)
    await uow.leads.set_stage(lead, to_stage)
    event_details = dict(details or {})
    if reason:
        event_details["reason"] = reason
    await uow.events.add(
        lead.lead_id,
        "stage_changed",
        from_stage=from_stage,
        to_stage=to_stage.value,
        details=event_details or None,
        actor=actor,
    )
    logger.info(
        "Lead %s moved %s -> %s (%s)", lead.lead_id, from_stage, to_stage.value, actor
    )
