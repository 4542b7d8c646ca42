"""Pipeline statistics and the CSV lead export.

The export guards against spreadsheet formula injection: free-text
columns typed by sellers or operators lose any leading ``=``, ``+``,
``-``, ``@``, tab or carriage return, and each stripped value is logged.
"""

import csv
import logging
from datetime import datetime
from io import StringIO
from typing import Any, Dict, Iterable, Iterator, Optional, Tuple

from vendor_pipeline.models.lead import VendorLead
from vendor_pipeline.schemas.pipeline import (
    AverageTimes,
    ConversionRates,
    FinancialSummary,
    PipelineStatsResponse,
)

logger = logging.getLogger(__name__)

EXPORT_HEADERS = [
    "ID",
    "Vendor Name",
    "Phone",
    "Email",
    "Property Address",
    "Postcode",
    "Asking Price",
    "Pipeline Stage",
    "Motivation Score",
    "BMV Score",
    "Offer Amount",
    "Offer Percentage",
    "Created At",
    "Last Contact",
    "SMS Count",
]

FORMULA_PREFIXES = frozenset("=+-@\t\r")


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _number(value: Any, digits: int = 2) -> float:
    return round(float(value), digits) if value is not None else 0.0


def build_pipeline_stats(
    by_stage: Dict[str, int], metrics: Dict[str, Any]
) -> PipelineStatsResponse:
    """Combine stage counts with the aggregates from ``pipeline_metrics``."""
    total = int(metrics.get("total") or 0)
    with_offer = int(metrics.get("with_offer") or 0)
    accepted = int(metrics.get("accepted") or 0)
    return PipelineStatsResponse(
        total=total,
        by_stage=by_stage,
        conversion_rates=ConversionRates(
            lead_to_offer=_percent(with_offer, total),
            offer_to_acceptance=_percent(accepted, with_offer),
            overall=_percent(accepted, total),
        ),
        avg_times=AverageTimes(
            conversation_duration_hours=_number(metrics.get("conversation_hours")),
            time_to_offer_hours=_number(metrics.get("time_to_offer_hours")),
            time_to_close_days=_number(metrics.get("time_to_close_days")),
        ),
        financial=FinancialSummary(
            total_offers_made=round(_number(metrics.get("total_offered"))),
            total_accepted_value=round(_number(metrics.get("total_accepted"))),
            avg_bmv_percentage=_number(metrics.get("avg_offer_bmv")),
        ),
    )


def sanitize_csv_field(value: Optional[str], field_name: str) -> str:
    if not value:
        return ""
    text = str(value).strip()
    cleaned = text.lstrip("".join(FORMULA_PREFIXES))
    if cleaned != text:
        logger.warning(
            "Stripped formula characters %r from export field %s",
            text[: len(text) - len(cleaned)],
            field_name,
        )
    return cleaned


def _money(value: Any) -> str:
    return f"{float(value):.2f}" if value is not None else ""


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


def export_row(lead: VendorLead, sms_count: int) -> list:
    return [
        str(lead.lead_id),
        sanitize_csv_field(lead.vendor_name, "vendor_name"),
        lead.vendor_phone,
        sanitize_csv_field(lead.vendor_email, "vendor_email"),
        sanitize_csv_field(lead.property_address, "property_address"),
        sanitize_csv_field(lead.property_postcode, "property_postcode"),
        _money(lead.asking_price),
        lead.stage,
        str(lead.motivation_score) if lead.motivation_score is not None else "",
        _money(lead.bmv_score),
        _money(lead.offer_amount),
        _money(lead.offer_percentage),
        _timestamp(lead.created_at),
        _timestamp(lead.last_contact_at),
        str(sms_count),
    ]


def iter_leads_csv(rows: Iterable[Tuple[VendorLead, int]]) -> Iterator[str]:
    """Yield the export one CSV line at a time, header first."""
    buffer = StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)

    def flush() -> str:
        line = buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)
        return line

    writer.writerow(EXPORT_HEADERS)
    yield flush()
    for lead, sms_count in rows:
        writer.writerow(export_row(lead, sms_count))
        yield flush()
