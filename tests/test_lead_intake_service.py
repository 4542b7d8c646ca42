from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import DataError, IntegrityError

from vendor_pipeline.core.cache import CacheService
from vendor_pipeline.core.exceptions import DuplicateLeadError
from vendor_pipeline.integrations.intake import IntakeLead, NullIntake
from vendor_pipeline.schemas.lead import VendorLeadCreate
from vendor_pipeline.services.lead_intake_service import LeadIntakeService
from tests.fakes import FIXED_NOW, FakeUnitOfWork, make_lead, uow_factory_for


def _intake_lead(external_id="fb1", **overrides):
    data = {
        "external_lead_id": external_id,
        "submitted_at": FIXED_NOW,
        "vendor_name": "Sarah Jones",
        "vendor_phone": "+447700900123",
        "property_address": "12 High Street, Manchester M1 1AE",
        "asking_price": 250_000,
        "raw": {"id": external_id},
    }
    data.update(overrides)
    return IntakeLead(**data)


def _intake(*leads):
    intake = MagicMock()
    intake.fetch_since = AsyncMock(return_value=list(leads))
    return intake


class TestManualLead:
    @pytest.mark.asyncio
    async def test_create(self, mock_redis, mock_cache):
        uow = FakeUnitOfWork()
        service = LeadIntakeService(NullIntake(), cache=mock_cache)

        lead = await service.create_manual_lead(
            uow,
            VendorLeadCreate(
                vendor_name="Sarah Jones",
                vendor_phone="07700900123",
                property_address="12 High Street, Manchester M1 1AE",
                condition="needs_work",
            ),
        )

        assert lead.stage == "NEW_LEAD"
        assert lead.vendor_phone == "+447700900123"
        assert lead.condition == "needs_work"
        assert uow.event_types() == ["lead_created"]
        uow.commit.assert_awaited_once()
        mock_redis.setex.assert_awaited_once_with(
            "lead_duplicate:+447700900123", 86400, str(lead.lead_id)
        )

    @pytest.mark.asyncio
    async def test_duplicate_from_cache(self, mock_redis, mock_cache):
        mock_redis.get.return_value = "some-lead-id"
        uow = FakeUnitOfWork()
        service = LeadIntakeService(NullIntake(), cache=mock_cache)

        with pytest.raises(DuplicateLeadError):
            await service.create_manual_lead(
                uow, VendorLeadCreate(vendor_name="Sarah", vendor_phone="+447700900123")
            )
        uow.leads.create.assert_not_awaited()
        uow.leads.find_recent_by_phone.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_from_database(self):
        uow = FakeUnitOfWork()
        uow.leads.find_recent_by_phone.return_value = make_lead()
        service = LeadIntakeService(NullIntake(), cache=CacheService())

        with pytest.raises(DuplicateLeadError):
            await service.create_manual_lead(
                uow, VendorLeadCreate(vendor_name="Sarah", vendor_phone="+447700900123")
            )
        phone, since = uow.leads.find_recent_by_phone.await_args.args
        assert phone == "+447700900123"
        assert datetime.now(timezone.utc) - since >= timedelta(hours=23, minutes=59)


class TestIntakeSync:
    @pytest.mark.asyncio
    async def test_creates_new_leads(self):
        uow = FakeUnitOfWork()
        intake = _intake(_intake_lead("fb1"), _intake_lead("fb2", vendor_phone="+447700900456"))
        service = LeadIntakeService(intake, cache=CacheService())

        created = await service.process_new_intake_leads(uow_factory_for(uow))

        assert created == 2
        leads = list(uow.store.values())
        assert {lead.external_lead_id for lead in leads} == {"fb1", "fb2"}
        assert all(lead.property_postcode == "M1 1AE" for lead in leads)
        assert uow.intake_syncs.create.await_count == 2
        assert uow.commit.await_count == 2

    @pytest.mark.asyncio
    async def test_uses_last_sync_time(self):
        uow = FakeUnitOfWork()
        last = FIXED_NOW - timedelta(hours=1)
        uow.intake_syncs.last_submitted_at.return_value = last
        intake = _intake()

        created = await LeadIntakeService(intake, cache=CacheService()).process_new_intake_leads(
            uow_factory_for(uow)
        )

        assert created == 0
        intake.fetch_since.assert_awaited_once_with(last)

    @pytest.mark.asyncio
    async def test_first_sync_looks_back(self):
        uow = FakeUnitOfWork()
        intake = _intake()
        service = LeadIntakeService(intake, cache=CacheService(), lookback_hours=6)

        await service.process_new_intake_leads(uow_factory_for(uow))

        since = intake.fetch_since.await_args.args[0]
        expected = datetime.now(timezone.utc) - timedelta(hours=6)
        assert abs((since - expected).total_seconds()) < 60

    @pytest.mark.asyncio
    async def test_skips_already_imported(self):
        uow = FakeUnitOfWork()
        uow.intake_syncs.exists.side_effect = lambda external_id: external_id == "fb1"
        intake = _intake(_intake_lead("fb1"), _intake_lead("fb2"))

        created = await LeadIntakeService(intake, cache=CacheService()).process_new_intake_leads(
            uow_factory_for(uow)
        )

        assert created == 1
        assert [lead.external_lead_id for lead in uow.store.values()] == ["fb2"]

    @pytest.mark.asyncio
    async def test_lost_race_is_harmless(self):
        uow = FakeUnitOfWork()
        uow.commit.side_effect = [IntegrityError("insert", {}, Exception("unique")), None]
        intake = _intake(_intake_lead("fb1"), _intake_lead("fb2"))

        created = await LeadIntakeService(intake, cache=CacheService()).process_new_intake_leads(
            uow_factory_for(uow)
        )

        assert created == 1
        uow.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_bad_row_does_not_block_the_batch(self):
        uow = FakeUnitOfWork()
        uow.commit.side_effect = [
            DataError("insert", {}, Exception("value too long for type character varying")),
            None,
        ]
        intake = _intake(_intake_lead("fb1"), _intake_lead("fb2"))

        created = await LeadIntakeService(intake, cache=CacheService()).process_new_intake_leads(
            uow_factory_for(uow)
        )

        assert created == 1
        assert uow.commit.await_count == 2
        uow.rollback.assert_awaited_once()
