import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import logging

from vendor_pipeline.api.v1.router import router as api_v1_router
from vendor_pipeline.core.config import settings as app_settings
from vendor_pipeline.core.database import AsyncSessionLocal, engine
from vendor_pipeline.core.exceptions import (
    CollaboratorUnavailableError,
    ConcurrentUpdateError,
    DuplicateLeadError,
    ImmutableMessageError,
    InvalidStageTransitionError,
    InvalidWebhookSignatureError,
    LeadNotFoundError,
    OfferCalculationError,
)
from vendor_pipeline.core.rate_limit import limiter
from vendor_pipeline.dependencies import PipelineServices, build_collaborators
from vendor_pipeline.services.pipeline_service import start_pipeline_loop

# Configure logging
logging.basicConfig(
    level=getattr(logging, app_settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the services once and run the pipeline loop in the background."""
    services = PipelineServices(build_collaborators(app_settings), AsyncSessionLocal, engine)
    app.state.services = services

    stop_event = asyncio.Event()
    pipeline_task = None
    if app_settings.PIPELINE_ENABLED:
        pipeline_task = asyncio.create_task(
            start_pipeline_loop(services.pipeline, stop_event=stop_event)
        )
        logger.info("Background pipeline task scheduled")
    yield
    # Shutdown: let the current cycle finish, then stop
    stop_event.set()
    if pipeline_task is not None:
        try:
            await asyncio.wait_for(pipeline_task, timeout=30)
        except asyncio.TimeoutError:
            pipeline_task.cancel()
            logger.warning("Pipeline cycle did not finish in time; cancelled")
    await engine.dispose()


app = FastAPI(
    title="Vendor Acquisition Pipeline",
    description="SMS-driven seller acquisition, underwriting and offers for UK property",
    version="0.1.0",
    lifespan=lifespan,
)

# Attach rate limiter state so slowapi middleware can find it
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# CORS middleware – restricted to configured origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        o.strip() for o in app_settings.CORS_ORIGINS.split(",") if o.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_v1_router)


@app.exception_handler(LeadNotFoundError)
async def lead_not_found_handler(request: Request, exc: LeadNotFoundError):
    logger.warning("Lead not found: %s", exc.detail)
    return JSONResponse(
        status_code=404,
        content={"detail": exc.detail, "type": "lead_not_found"},
    )


@app.exception_handler(DuplicateLeadError)
async def duplicate_lead_handler(request: Request, exc: DuplicateLeadError):
    logger.warning("Duplicate lead detected: %s", exc.detail)
    return JSONResponse(
        status_code=409,
        content={"detail": exc.detail, "type": "duplicate_lead"},
    )


@app.exception_handler(InvalidStageTransitionError)
async def invalid_stage_transition_handler(
    request: Request, exc: InvalidStageTransitionError
):
    logger.warning("Invalid stage transition: %s", exc.detail)
    return JSONResponse(
        status_code=400,
        content={"detail": exc.detail, "type": "invalid_stage_transition"},
    )


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError):
    logger.warning("Concurrent update: %s", exc.detail)
    return JSONResponse(
        status_code=409,
        content={"detail": exc.detail, "type": "concurrent_update"},
    )


@app.exception_handler(OfferCalculationError)
async def offer_calculation_handler(request: Request, exc: OfferCalculationError):
    logger.warning("Offer calculation failed: %s", exc.detail)
    return JSONResponse(
        status_code=422,
        content={"detail": exc.detail, "type": "offer_calculation_error"},
    )


@app.exception_handler(CollaboratorUnavailableError)
async def collaborator_unavailable_handler(
    request: Request, exc: CollaboratorUnavailableError
):
    logger.error("Collaborator unavailable: %s", exc.detail)
    return JSONResponse(
        status_code=503,
        content={"detail": exc.detail, "type": "collaborator_unavailable"},
    )


@app.exception_handler(InvalidWebhookSignatureError)
async def invalid_signature_handler(request: Request, exc: InvalidWebhookSignatureError):
    logger.warning("Rejected webhook from %s: %s", request.client, exc.detail)
    return JSONResponse(
        status_code=403,
        content={"detail": exc.detail, "type": "invalid_webhook_signature"},
    )


@app.exception_handler(ImmutableMessageError)
async def immutable_message_handler(request: Request, exc: ImmutableMessageError):
    logger.error("Attempt to modify SMS log: %s", exc.detail)
    return JSONResponse(
        status_code=409,
        content={"detail": exc.detail, "type": "immutable_message"},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning("Request validation error: %s", exc.errors())
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Request validation failed",
            "errors": jsonable_encoder(exc.errors()),
            "type": "validation_error",
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for unexpected/unhandled exceptions.

    Returns a generic 500 response so that raw stack traces are never
    leaked to the client.
    """
    logger.error(
        "Unhandled exception on %s %s: %s",
        request.method,
        request.url.path,
        exc,
        exc_info=True,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "An unexpected internal error occurred. Please try again later.",
            "type": "internal_server_error",
        },
    )
