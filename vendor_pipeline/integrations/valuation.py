import logging
from typing import Optional, Protocol

import httpx

from vendor_pipeline.integrations.http import collaborator_call

logger = logging.getLogger(__name__)

# PropertyData refuses valuations below this floor area
MIN_VALUATION_AREA_SQ_FT = 300

# Replies meaning "no estimate for this property". Any other 4xx (bad key,
# quota, request timeout) is an outage and the lead is retried next cycle.
NO_ESTIMATE_STATUSES = frozenset({400, 404, 422})


class ValuationLookup(Protocol):
    async def estimate(
        self,
        postcode: str,
        property_type: str,
        area_sq_ft: int,
        bedrooms: int,
        bathrooms: int,
    ) -> Optional[float]: ...


class PropertyDataValuation:
    """Market value estimates from the PropertyData ``valuation-sale`` endpoint.

    Returns ``None`` when the service has no estimate for the property;
    raises ``CollaboratorUnavailableError`` when it cannot be reached.
    """

    def __init__(self, api_key: str, base_url: str, timeout: float) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    async def estimate(
        self,
        postcode: str,
        property_type: str,
        area_sq_ft: int,
        bedrooms: int,
        bathrooms: int,
    ) -> Optional[float]:
        if area_sq_ft < MIN_VALUATION_AREA_SQ_FT:
            logger.warning(
                "Floor area %s sq ft below valuation minimum for %s", area_sq_ft, postcode
            )
            return None

        params = {
            "key": self._api_key,
            "postcode": postcode,
            "property_type": property_type.lower(),
            "internal_area": str(area_sq_ft),
            "bedrooms": str(bedrooms),
            "bathrooms": str(bathrooms),
            "construction_date": "unknown",
            "finish_quality": "average",
            "outdoor_space": "none",
            "off_street_parking": "0",
        }
        async with collaborator_call("PropertyData"):
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    f"{self._base_url}/valuation-sale", params=params
                )
                if response.status_code in NO_ESTIMATE_STATUSES:
                    logger.warning(
                        "PropertyData rejected valuation for %s: %s",
                        postcode,
                        response.status_code,
                    )
                    return None
                response.raise_for_status()

        data = response.json()
        result = data.get("result") or {}
        if data.get("status") != "success" or not result.get("estimate"):
            logger.info("No valuation estimate for %s", postcode)
            return None
        return float(result["estimate"])
