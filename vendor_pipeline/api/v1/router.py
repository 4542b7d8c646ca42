from fastapi import APIRouter

from vendor_pipeline.api.v1.endpoints import health, leads, pipeline, webhooks

router = APIRouter(prefix="/api/v1")

router.include_router(leads.router)
router.include_router(pipeline.router)
router.include_router(webhooks.router)
router.include_router(health.router)
