import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from vendor_pipeline.core.exceptions import CollaboratorUnavailableError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def collaborator_call(service: str) -> AsyncIterator[None]:
    """Translate httpx failures inside the block into a domain error."""
    try:
        yield
    except httpx.TimeoutException:
        logger.error("%s request timed out", service)
        raise CollaboratorUnavailableError(f"{service} timed out")
    except httpx.HTTPStatusError as exc:
        logger.error(
            "%s returned %s: %s",
            service,
            exc.response.status_code,
            exc.response.text[:300],
        )
        raise CollaboratorUnavailableError(
            f"{service} returned {exc.response.status_code}"
        )
    except httpx.HTTPError as exc:
        logger.error("%s unreachable: %s", service, exc)
        raise CollaboratorUnavailableError(f"{service} unavailable")
