"""API-layer dependency functions.

Re-exports the dependency factories from ``vendor_pipeline.dependencies``
so that endpoint modules only need to import from
``vendor_pipeline.api.deps``.
"""

from vendor_pipeline.dependencies import (
    # Unit of work
    get_uow,
    # Service factories
    get_services,
    get_pipeline_service,
    get_lead_operations_service,
    get_lead_intake_service,
    get_inbound_service,
    # Redis
    get_redis_client,
    get_cache_service,
)

__all__ = [
    "get_uow",
    "get_services",
    "get_pipeline_service",
    "get_lead_operations_service",
    "get_lead_intake_service",
    "get_inbound_service",
    "get_redis_client",
    "get_cache_service",
]
