from datetime import datetime, timezone

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from vendor_pipeline.core.constants import ALLOWED_TRANSITIONS
from vendor_pipeline.core.exceptions import (
    ImmutableMessageError,
    InvalidStageTransitionError,
)
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.models.message import SMSMessage
from vendor_pipeline.schemas.common import PipelineStage


# Auto updated_at
@event.listens_for(VendorLead, "before_update")
def update_timestamp(mapper, connection, target):
    target.updated_at = datetime.now(timezone.utc)


# Message log is append-only
@event.listens_for(SMSMessage, "before_update")
def block_message_updates(mapper, connection, target):
    raise ImmutableMessageError(
        f"SMS message {target.message_id} cannot be modified"
    )


# Stage transition validation, last line of defence behind the service layer
@event.listens_for(Session, "before_flush")
def validate_stage_transitions(session: Session, flush_context, instances):
    for obj in session.dirty:
        if not isinstance(obj, VendorLead):
            continue
        history = inspect(obj).attrs.stage.history
        if not history.has_changes() or not history.deleted or not history.added:
            continue
        old, new = history.deleted[0], history.added[0]
        if old == new:
            continue
        allowed = ALLOWED_TRANSITIONS.get(PipelineStage(old), [])
        if PipelineStage(new) not in allowed:
            raise InvalidStageTransitionError(
                f"Invalid transition: {old} → {new}"
            )
