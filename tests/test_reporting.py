import csv
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO

from vendor_pipeline.services.reporting import (
    EXPORT_HEADERS,
    build_pipeline_stats,
    iter_leads_csv,
    sanitize_csv_field,
)
from tests.fakes import FIXED_NOW, make_offer_lead


class TestBuildPipelineStats:
    def test_rates_times_and_totals(self):
        metrics = {
            "total": 10,
            "with_offer": 4,
            "accepted": 1,
            "conversation_hours": Decimal("12.5"),
            "time_to_offer_hours": Decimal("30.25"),
            "time_to_close_days": Decimal("6.75"),
            "total_offered": Decimal("848000.00"),
            "total_accepted": Decimal("212000.00"),
            "avg_offer_bmv": Decimal("19.3512"),
        }

        stats = build_pipeline_stats({"NEW_LEAD": 6, "OFFER_ACCEPTED": 1}, metrics)

        assert stats.total == 10
        assert stats.by_stage["NEW_LEAD"] == 6
        assert stats.conversion_rates.lead_to_offer == 40.0
        assert stats.conversion_rates.offer_to_acceptance == 25.0
        assert stats.conversion_rates.overall == 10.0
        assert stats.avg_times.conversation_duration_hours == 12.5
        assert stats.avg_times.time_to_offer_hours == 30.25
        assert stats.avg_times.time_to_close_days == 6.75
        assert stats.financial.total_offers_made == 848_000
        assert stats.financial.total_accepted_value == 212_000
        assert stats.financial.avg_bmv_percentage == 19.35

    def test_empty_pipeline_has_zero_rates(self):
        metrics = {"total": 0, "with_offer": 0, "accepted": 0}
        stats = build_pipeline_stats({}, metrics)
        assert stats.conversion_rates.offer_to_acceptance == 0.0
        assert stats.avg_times.time_to_offer_hours == 0.0
        assert stats.financial.total_offers_made == 0


class TestCsvExport:
    def test_formula_prefixes_are_stripped(self):
        assert sanitize_csv_field("=HYPERLINK(\"x\")", "vendor_name") == "HYPERLINK(\"x\")"
        assert sanitize_csv_field("@SUM(A1)", "property_address") == "SUM(A1)"
        assert sanitize_csv_field("Sarah Jones", "vendor_name") == "Sarah Jones"
        assert sanitize_csv_field(None, "vendor_email") == ""

    def test_rows_follow_header(self):
        lead = make_offer_lead(
            vendor_name="=cmd|' /C calc'!A0",
            offer_amount=212_000,
            offer_percentage=84.8,
            bmv_score=19.35,
            last_contact_at=datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc),
        )

        lines = list(iter_leads_csv([(lead, 7)]))

        assert len(lines) == 2
        rows = list(csv.reader(StringIO("".join(lines))))
        assert rows[0] == EXPORT_HEADERS
        row = dict(zip(rows[0], rows[1]))
        assert row["ID"] == str(lead.lead_id)
        assert row["Vendor Name"] == "cmd|' /C calc'!A0"
        assert row["Phone"] == "+447700900123"
        assert row["Asking Price"] == "250000.00"
        assert row["Offer Amount"] == "212000.00"
        assert row["Motivation Score"] == "8"
        assert row["Created At"] == FIXED_NOW.isoformat()
        assert row["Last Contact"] == "2026-03-02T10:30:00+00:00"
        assert row["SMS Count"] == "7"

    def test_every_cell_is_quoted(self):
        lead = make_offer_lead()
        lines = list(iter_leads_csv([(lead, 0)]))
        assert lines[0].startswith('"ID","Vendor Name"')
        assert lines[1].startswith(f'"{lead.lead_id}"')

    def test_empty_export_is_header_only(self):
        assert len(list(iter_leads_csv([]))) == 1
