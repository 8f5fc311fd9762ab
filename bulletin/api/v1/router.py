"""API v1 router combining all route modules."""

from fastapi import APIRouter

from bulletin.api.v1 import health, newsletters, subscriptions, templates

api_router = APIRouter()

# Include health check routes (no prefix)
api_router.include_router(health.router)

# Public subscription and self-service management
api_router.include_router(
    subscriptions.router,
    tags=["subscriptions"],
)

# Newsletter campaigns (admin)
api_router.include_router(
    newsletters.router,
    prefix="/newsletters",
    tags=["newsletters"],
)

# Newsletter templates (admin)
api_router.include_router(
    templates.router,
    prefix="/templates",
    tags=["templates"],
)
