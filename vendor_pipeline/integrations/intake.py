import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel

from vendor_pipeline.core.formatting import normalize_uk_phone, parse_price
from vendor_pipeline.integrations.http import collaborator_call

logger = logging.getLogger(__name__)


class IntakeLead(BaseModel):
    """A seller enquiry pulled from an external lead source."""

    external_lead_id: str
    submitted_at: datetime
    vendor_name: str
    vendor_phone: str
    vendor_email: Optional[str] = None
    property_address: Optional[str] = None
    asking_price: Optional[float] = None
    campaign_id: Optional[str] = None
    lead_source: str = "facebook_ads"
    raw: Dict[str, Any] = {}


class LeadIntake(Protocol):
    async def fetch_since(self, since: datetime) -> List[IntakeLead]: ...


class NullIntake:
    """Intake disabled: leads arrive only through the API."""

    async def fetch_since(self, since: datetime) -> List[IntakeLead]:
        return []


# Column widths on vendor_leads; longer form answers are clipped to fit
MAX_NAME_LENGTH = 200
MAX_ADDRESS_LENGTH = 255
MAX_EMAIL_LENGTH = 255
MAX_CAMPAIGN_ID_LENGTH = 100
MAX_PHONE_LENGTH = 20


def _first(fields: Dict[str, str], *names: str) -> Optional[str]:
    for name in names:
        value = (fields.get(name) or "").strip()
        if value:
            return value
    return None


def _clip(value: Any, limit: int) -> Optional[str]:
    return str(value)[:limit].rstrip() if value else None


def parse_facebook_lead(lead: Dict[str, Any]) -> IntakeLead:
    """Flatten a Graph API lead (``field_data`` list) into ``IntakeLead``."""
    fields: Dict[str, str] = {}
    for field in lead.get("field_data") or []:
        values = field.get("values") or [""]
        fields[str(field.get("name", "")).lower()] = values[0] or ""

    name = _first(fields, "full_name", "name")
    if not name:
        name = " ".join(
            part for part in (fields.get("first_name"), fields.get("last_name")) if part
        ).strip() or "Unknown"

    asking = parse_price(_first(fields, "asking_price", "price", "property_price"))
    phone = normalize_uk_phone(_first(fields, "phone_number", "phone", "mobile"))
    if len(phone) > MAX_PHONE_LENGTH:
        raise ValueError(f"phone number too long: {phone!r}")
    email = _first(fields, "email", "email_address")
    if email and len(email) > MAX_EMAIL_LENGTH:
        email = None

    return IntakeLead(
        external_lead_id=str(lead["id"]),
        submitted_at=datetime.fromisoformat(
            lead["created_time"].replace("+0000", "+00:00")
        ),
        vendor_name=_clip(name, MAX_NAME_LENGTH),
        vendor_phone=phone,
        vendor_email=email,
        property_address=_clip(
            _first(fields, "property_address", "address"), MAX_ADDRESS_LENGTH
        ),
        asking_price=asking,
        campaign_id=_clip(
            _first(fields, "ad_id") or lead.get("ad_id"), MAX_CAMPAIGN_ID_LENGTH
        ),
        raw=lead,
    )


class FacebookLeadIntake:
    """Polls a Facebook Lead Ads form for new submissions."""

    def __init__(
        self, access_token: str, form_id: str, graph_url: str, timeout: float
    ) -> None:
        self._access_token = access_token
        self._form_id = form_id
        self._graph_url = graph_url.rstrip("/")
        self._timeout = timeout

    async def fetch_since(self, since: datetime) -> List[IntakeLead]:
        params = {
            "access_token": self._access_token,
            "fields": "id,created_time,field_data,ad_id",
            "since": str(int(since.timestamp())),
        }
        url: Optional[str] = f"{self._graph_url}/{self._form_id}/leads"
        raw_leads: List[Dict[str, Any]] = []
        async with collaborator_call("Facebook Graph"):
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                while url:
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    body = response.json()
                    raw_leads.extend(body.get("data") or [])
                    # "next" already carries every query parameter
                    url = (body.get("paging") or {}).get("next")
                    params = None

        leads = []
        for raw in raw_leads:
            try:
                lead = parse_facebook_lead(raw)
            except (KeyError, ValueError):
                logger.warning("Skipping malformed Facebook lead %s", raw.get("id"), exc_info=True)
                continue
            if not lead.vendor_phone:
                logger.warning("Skipping Facebook lead %s without phone", lead.external_lead_id)
                continue
            leads.append(lead)
        return leads
