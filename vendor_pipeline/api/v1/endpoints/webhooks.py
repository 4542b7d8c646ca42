import logging

from fastapi import APIRouter, Depends, Request, Response

from vendor_pipeline.api.deps import get_inbound_service
from vendor_pipeline.core.config import settings
from vendor_pipeline.core.rate_limit import limiter
from vendor_pipeline.integrations.messaging import (
    parse_twilio_inbound,
    validate_twilio_signature,
)
from vendor_pipeline.schemas.webhook import EMPTY_TWIML
from vendor_pipeline.services.inbound_service import InboundService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _public_url(request: Request) -> str:
    """The URL the gateway signed; behind a proxy it differs from request.url."""
    if settings.WEBHOOK_PUBLIC_URL:
        return settings.WEBHOOK_PUBLIC_URL.rstrip("/") + request.url.path
    return str(request.url)


@router.post("/sms")
@limiter.limit("120/minute")
async def receive_sms(
    request: Request,
    service: InboundService = Depends(get_inbound_service),
) -> Response:
    """Receive an inbound SMS from the messaging gateway.

    Once the signature checks out the gateway always gets an empty 200
    TwiML response, even when the reply could not be produced; the
    message itself is already recorded and the pipeline cycle answers
    it later.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}
    if settings.MESSAGING_PROVIDER == "twilio":
        validate_twilio_signature(
            settings.TWILIO_AUTH_TOKEN,
            _public_url(request),
            params,
            request.headers.get("X-Twilio-Signature"),
        )

    inbound = parse_twilio_inbound(params)
    if not inbound.provider_message_id or not inbound.from_number:
        logger.warning("Ignoring inbound webhook without MessageSid/From")
        return Response(content=EMPTY_TWIML, media_type="application/xml")

    try:
        outcome = await service.handle(inbound)
        logger.info(
            "Inbound SMS %s: %s (lead=%s action=%s)",
            inbound.provider_message_id, outcome.status, outcome.lead_id, outcome.action,
        )
    except Exception:
        logger.error(
            "Inbound SMS %s could not be processed", inbound.provider_message_id,
            exc_info=True,
        )
    return Response(content=EMPTY_TWIML, media_type="application/xml")
