"""FastAPI application for the Commerce Service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from libs.common.config import get_settings
from libs.common.error_handler import add_exception_handlers
from libs.common.logging import configure_logging, get_logger
from libs.common.middleware import add_observability_middleware
from libs.db.config import AsyncSessionLocal
from services.commerce_service.dispatch import build_dispatcher
from services.commerce_service.errors import (
    BusinessRuleViolation,
    CommerceError,
    ExternalGatewayError,
    NotFoundError,
)
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.routers import (
    admin_router,
    checkout_router,
    payments_router,
    webhooks_router,
)
from services.commerce_service.services.settings_lookup import SettingsLookup
from services.commerce_service.shipping_client import ShippingClient

logger = get_logger(__name__)

ERROR_STATUS = {
    CommerceError: 500,
    NotFoundError: 404,
    BusinessRuleViolation: 409,
    ExternalGatewayError: 502,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    state = app.state
    if not hasattr(state, "session_factory"):
        state.session_factory = AsyncSessionLocal
    if not hasattr(state, "settings_lookup"):
        state.settings_lookup = SettingsLookup(settings)
    if not hasattr(state, "gateway"):
        state.gateway = GatewayClient()
    if not hasattr(state, "shipping"):
        state.shipping = ShippingClient()
    if not hasattr(state, "dispatcher"):
        state.dispatcher = build_dispatcher(
            settings.DISPATCH_BACKEND,
            max_workers=settings.DISPATCH_MAX_WORKERS,
            queue_size=settings.DISPATCH_QUEUE_SIZE,
        )
    await state.dispatcher.start()
    logger.info("Commerce service started (%s)", settings.ENVIRONMENT)
    try:
        yield
    finally:
        await state.dispatcher.close()


def create_app() -> FastAPI:
    """Create and configure the Commerce Service FastAPI app."""
    configure_logging()
    app = FastAPI(
        title="Storefront Commerce Service",
        version="0.1.0",
        description="Orders, invoices, payment reconciliation and the store ledger.",
        lifespan=lifespan,
    )

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "commerce"}

    add_observability_middleware(app)
    add_exception_handlers(app, ERROR_STATUS)

    # Customer-facing routes (checkout, payments, webhooks)
    app.include_router(checkout_router, prefix="/commerce")
    app.include_router(payments_router, prefix="/commerce")
    app.include_router(webhooks_router, prefix="/commerce")

    # Admin routes (order lifecycle, manual payments, sweep)
    app.include_router(admin_router, prefix="/admin/commerce")

    return app


app = create_app()
