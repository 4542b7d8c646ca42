from typing import Optional

from pydantic import BaseModel


class InboundSMS(BaseModel):
    """Provider-neutral view of an inbound SMS webhook."""

    provider_message_id: str
    from_number: str
    to_number: Optional[str] = None
    body: str


EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'
