"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.integration import callback_router, router as integration_router
from app.api.routes.pages import router as pages_router
from app.api.routes.webhook_events import router as webhook_events_router
from app.api.webhooks.meta import router as meta_router

router = APIRouter()

router.include_router(integration_router, prefix="/integration", tags=["Integration"])
router.include_router(webhook_events_router, prefix="/webhook-events", tags=["Webhook Events"])
router.include_router(pages_router, prefix="/pages", tags=["Pages"])

# Backwards-compatible endpoints (canonical: /webhook, /integration/callback)
router.include_router(meta_router, prefix="/meta", tags=["Webhooks"], include_in_schema=False)
router.include_router(
    callback_router,
    prefix="/integration",
    tags=["Integration"],
    include_in_schema=False,
)
