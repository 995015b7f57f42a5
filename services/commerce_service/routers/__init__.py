"""Commerce service routers package."""

from services.commerce_service.routers.admin import router as admin_router
from services.commerce_service.routers.checkout import router as checkout_router
from services.commerce_service.routers.payments import router as payments_router
from services.commerce_service.routers.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "checkout_router",
    "payments_router",
    "webhooks_router",
]
