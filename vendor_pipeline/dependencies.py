"""Collaborator selection and FastAPI dependency factories.

Concrete messaging, inference, valuation and intake implementations are
chosen exactly once, here, from explicit settings.  Nothing below the
API layer branches on configuration to decide which one to call.
"""

import logging
from typing import Callable

from fastapi import Depends, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from vendor_pipeline.core.cache import CacheService
from vendor_pipeline.core.config import Settings, settings
from vendor_pipeline.core.database import get_db
from vendor_pipeline.integrations.inference import AnthropicProvider, OpenAIProvider
from vendor_pipeline.integrations.intake import FacebookLeadIntake, NullIntake
from vendor_pipeline.integrations.messaging import ConsoleGateway, TwilioGateway
from vendor_pipeline.integrations.valuation import PropertyDataValuation
from vendor_pipeline.repositories.lock_repository import AdvisoryLock
from vendor_pipeline.repositories.unit_of_work import (
    PipelineUnitOfWork,
    unit_of_work_factory,
)
from vendor_pipeline.services.conversation_agent import ConversationAgent
from vendor_pipeline.services.conversation_service import ConversationService
from vendor_pipeline.services.deal_validator import DealValidator
from vendor_pipeline.services.extraction import ExtractionMerger
from vendor_pipeline.services.inbound_service import InboundService
from vendor_pipeline.services.lead_intake_service import LeadIntakeService
from vendor_pipeline.services.lead_operations_service import LeadOperationsService
from vendor_pipeline.services.messenger import LeadMessenger
from vendor_pipeline.services.negotiation import NegotiationService
from vendor_pipeline.services.offer_engine import OfferEngine
from vendor_pipeline.services.pipeline_service import VendorPipelineService

logger = logging.getLogger(__name__)


class Collaborators:
    """The four external collaborators the pipeline talks to."""

    def __init__(self, messaging, inference, valuation, intake) -> None:
        self.messaging = messaging
        self.inference = inference
        self.valuation = valuation
        self.intake = intake


def build_collaborators(cfg: Settings = settings) -> Collaborators:
    timeout = cfg.EXTERNAL_CALL_TIMEOUT_SECONDS

    if cfg.MESSAGING_PROVIDER == "twilio":
        messaging = TwilioGateway(
            account_sid=cfg.TWILIO_ACCOUNT_SID,
            auth_token=cfg.TWILIO_AUTH_TOKEN,
            from_number=cfg.TWILIO_PHONE_NUMBER,
            api_base_url=cfg.TWILIO_API_BASE_URL,
            timeout=timeout,
        )
    else:
        messaging = ConsoleGateway()

    if cfg.INFERENCE_PROVIDER == "anthropic":
        inference = AnthropicProvider(
            api_key=cfg.ANTHROPIC_API_KEY,
            model=cfg.ANTHROPIC_MODEL,
            max_tokens=cfg.INFERENCE_MAX_TOKENS,
            timeout=timeout,
        )
    else:
        inference = OpenAIProvider(
            api_key=cfg.OPENAI_API_KEY,
            model=cfg.OPENAI_MODEL,
            max_tokens=cfg.INFERENCE_MAX_TOKENS,
            timeout=timeout,
        )

    valuation = PropertyDataValuation(
        api_key=cfg.PROPERTYDATA_API_KEY,
        base_url=cfg.PROPERTYDATA_API_URL,
        timeout=timeout,
    )

    if cfg.INTAKE_PROVIDER == "facebook":
        intake = FacebookLeadIntake(
            access_token=cfg.FACEBOOK_ACCESS_TOKEN,
            form_id=cfg.FACEBOOK_LEAD_FORM_ID,
            graph_url=cfg.FACEBOOK_GRAPH_URL,
            timeout=timeout,
        )
    else:
        intake = NullIntake()

    logger.info(
        "Collaborators: messaging=%s inference=%s intake=%s",
        cfg.MESSAGING_PROVIDER, cfg.INFERENCE_PROVIDER, cfg.INTAKE_PROVIDER,
    )
    return Collaborators(messaging, inference, valuation, intake)


class PipelineServices:
    """Long-lived service objects shared by the API and the background loop."""

    def __init__(
        self,
        collaborators: Collaborators,
        session_factory: Callable[[], AsyncSession],
        engine: AsyncEngine,
    ) -> None:
        self.collaborators = collaborators
        self.uow_factory = unit_of_work_factory(session_factory)
        self.messenger = LeadMessenger(collaborators.messaging)
        self.agent = ConversationAgent(collaborators.inference)
        self.merger = ExtractionMerger()
        self.offer_engine = OfferEngine()
        self.negotiation = NegotiationService(self.messenger, self.offer_engine)
        self.conversation = ConversationService(
            self.agent, self.merger, self.messenger, self.negotiation
        )
        self.validator = DealValidator(collaborators.valuation)
        self.intake = LeadIntakeService(collaborators.intake)
        self.operations = LeadOperationsService(self.negotiation, self.messenger)
        self.pipeline = VendorPipelineService(
            uow_factory=self.uow_factory,
            leader_lock=AdvisoryLock(engine),
            intake_service=self.intake,
            agent=self.agent,
            conversation=self.conversation,
            validator=self.validator,
            negotiation=self.negotiation,
            messenger=self.messenger,
        )


# ---------------------------------------------------------------------------
# Redis client factory
# ---------------------------------------------------------------------------


async def get_redis_client() -> Redis:
    """Get an async Redis client instance using connection pooling."""
    try:
        client = Redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        return client
    except Exception:
        logger.warning("Redis unavailable – webhook de-duplication falls back to the database")
        return None  # type: ignore[return-value]


async def get_cache_service(
    redis_client: Redis = Depends(get_redis_client),
) -> CacheService:
    return CacheService(redis_client=redis_client)


# ---------------------------------------------------------------------------
# Unit of work and service factories
# ---------------------------------------------------------------------------


async def get_uow(db: AsyncSession = Depends(get_db)) -> PipelineUnitOfWork:
    return PipelineUnitOfWork(db)


def get_services(request: Request) -> PipelineServices:
    """Services built at startup by the application lifespan."""
    return request.app.state.services


def get_pipeline_service(
    services: PipelineServices = Depends(get_services),
) -> VendorPipelineService:
    return services.pipeline


def get_lead_operations_service(
    services: PipelineServices = Depends(get_services),
) -> LeadOperationsService:
    return services.operations


async def get_lead_intake_service(
    services: PipelineServices = Depends(get_services),
    cache: CacheService = Depends(get_cache_service),
) -> LeadIntakeService:
    return LeadIntakeService(services.collaborators.intake, cache=cache)


async def get_inbound_service(
    services: PipelineServices = Depends(get_services),
    cache: CacheService = Depends(get_cache_service),
) -> InboundService:
    return InboundService(
        uow_factory=services.uow_factory,
        conversation=services.conversation,
        cache=cache,
    )
