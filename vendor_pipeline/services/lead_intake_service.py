import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError

from vendor_pipeline.core.cache import CacheService
from vendor_pipeline.core.config import settings
from vendor_pipeline.core.exceptions import DuplicateLeadError
from vendor_pipeline.core.formatting import extract_postcode
from vendor_pipeline.integrations.intake import IntakeLead, LeadIntake
from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.common import PipelineStage
from vendor_pipeline.schemas.lead import VendorLeadCreate

logger = logging.getLogger(__name__)

# Manual entries for the same phone inside this window are duplicates
DUPLICATE_WINDOW_HOURS = 24


class LeadIntakeService:
    """Creates ``NEW_LEAD`` rows from the intake adapter or the API.

    External leads are de-duplicated by their external id, checked
    against both the sync table and ``vendor_leads.external_lead_id``;
    the unique constraints make a lost race harmless.
    """

    def __init__(
        self,
        intake: LeadIntake,
        cache: Optional[CacheService] = None,
        lookback_hours: Optional[int] = None,
    ) -> None:
        self._intake = intake
        self._cache: CacheService = cache or CacheService()
        self._lookback_hours = (
            lookback_hours if lookback_hours is not None else settings.INTAKE_LOOKBACK_HOURS
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def process_new_intake_leads(self, uow_factory: Callable) -> int:
        """Pull leads submitted since the last sync; return how many were created."""
        async with uow_factory() as uow:
            since = await uow.intake_syncs.last_submitted_at()
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(hours=self._lookback_hours)

        incoming = await self._intake.fetch_since(since)
        if not incoming:
            return 0
        logger.info("Intake returned %d lead(s) since %s", len(incoming), since.isoformat())

        created = failed = 0
        for item in incoming:
            async with uow_factory() as uow:
                try:
                    if await self._create_from_intake(uow, item):
                        await uow.commit()
                        created += 1
                except IntegrityError:
                    await uow.rollback()
                    logger.info("Intake lead %s already imported", item.external_lead_id)
                except Exception:
                    await uow.rollback()
                    failed += 1
                    logger.error(
                        "Failed to import intake lead %s",
                        item.external_lead_id,
                        exc_info=True,
                    )
        if failed:
            logger.warning("Intake: %d lead(s) failed to import this cycle", failed)
        return created

    async def create_manual_lead(
        self, uow, data: VendorLeadCreate, actor: str = "operator"
    ) -> VendorLead:
        """Create a lead entered by an operator.

        Raises:
            DuplicateLeadError: If the same phone was entered in the last 24 h.
        """
        await self._check_duplicate(uow, data.vendor_phone)

        lead = await uow.leads.create(
            lead_source="manual",
            stage=PipelineStage.NEW_LEAD.value,
            vendor_name=data.vendor_name,
            vendor_phone=data.vendor_phone,
            vendor_email=data.vendor_email,
            property_address=data.property_address,
            property_postcode=extract_postcode(data.property_address),
            asking_price=data.asking_price,
            property_type=data.property_type,
            bedrooms=data.bedrooms,
            bathrooms=data.bathrooms,
            condition=data.condition.value if data.condition else None,
            campaign_id=data.campaign_id,
            conversation_state={},
            retry_count=0,
        )
        await uow.flush()
        await uow.events.add(lead.lead_id, "lead_created", to_stage=lead.stage, actor=actor)
        await uow.commit()
        await self._cache.set(
            f"lead_duplicate:{data.vendor_phone}",
            str(lead.lead_id),
            ttl=DUPLICATE_WINDOW_HOURS * 3600,
        )
        logger.info("Manual lead %s created for %s", lead.lead_id, data.vendor_phone)
        return lead

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _create_from_intake(self, uow, item: IntakeLead) -> bool:
        if await uow.intake_syncs.exists(item.external_lead_id) or (
            await uow.leads.exists_external_id(item.external_lead_id)
        ):
            return False

        lead = await uow.leads.create(
            external_lead_id=item.external_lead_id,
            lead_source=item.lead_source,
            campaign_id=item.campaign_id,
            stage=PipelineStage.NEW_LEAD.value,
            vendor_name=item.vendor_name,
            vendor_phone=item.vendor_phone,
            vendor_email=item.vendor_email,
            property_address=item.property_address,
            property_postcode=extract_postcode(item.property_address),
            asking_price=item.asking_price,
            conversation_state={},
            retry_count=0,
        )
        await uow.flush()
        await uow.intake_syncs.create(
            external_lead_id=item.external_lead_id,
            vendor_lead_id=lead.lead_id,
            submitted_at=item.submitted_at,
            payload=item.raw,
        )
        await uow.events.add(
            lead.lead_id,
            "lead_created",
            to_stage=lead.stage,
            details={"source": item.lead_source, "external_lead_id": item.external_lead_id},
            actor="intake",
        )
        await uow.flush()
        return True

    async def _check_duplicate(self, uow, phone: str) -> None:
        """Redis first (fast path), then the authoritative DB query."""
        if await self._cache.get(f"lead_duplicate:{phone}") is not None:
            raise DuplicateLeadError(f"A lead for {phone} was created in the last 24 hours")

        since = datetime.now(timezone.utc) - timedelta(hours=DUPLICATE_WINDOW_HOURS)
        if await uow.leads.find_recent_by_phone(phone, since):
            raise DuplicateLeadError(f"A lead for {phone} was created in the last 24 hours")
