"""ARQ worker for the commerce service: sweep, reconciliation and post-commit jobs."""

from arq import cron
from libs.common.arq_config import COMMERCE_QUEUE_NAME, get_redis_settings
from libs.common.logging import configure_logging, get_logger
from libs.db.config import AsyncSessionLocal
from services.commerce_service.dispatch import ArqDispatcher
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.services.settings_lookup import SettingsLookup
from services.commerce_service.shipping_client import ShippingClient
from services.commerce_service.tasks import (
    task_cancel_shipment,
    task_create_shipment,
    task_reconcile_pending_transactions,
    task_run_expiration_sweep,
    task_send_notification,
)

logger = get_logger(__name__)


async def startup(ctx: dict):
    configure_logging()
    ctx["session_factory"] = AsyncSessionLocal
    ctx["settings_lookup"] = SettingsLookup()
    ctx["gateway"] = GatewayClient()
    ctx["shipping"] = ShippingClient()
    dispatcher = ArqDispatcher(get_redis_settings(), COMMERCE_QUEUE_NAME)
    await dispatcher.start()
    ctx["dispatcher"] = dispatcher
    logger.info("Commerce worker started")


async def shutdown(ctx: dict):
    dispatcher = ctx.get("dispatcher")
    if dispatcher is not None:
        await dispatcher.close()
    logger.info("Commerce worker stopped")


async def task_expiration_sweep(ctx: dict):
    logger.info("Running: expiration sweep")
    return await task_run_expiration_sweep(ctx)


async def task_reconcile_pending(ctx: dict):
    logger.info("Running: reconcile pending gateway transactions")
    return await task_reconcile_pending_transactions(ctx)


class WorkerSettings:
    redis_settings = get_redis_settings()
    queue_name = COMMERCE_QUEUE_NAME

    on_startup = startup
    on_shutdown = shutdown

    functions = [
        task_send_notification,
        task_create_shipment,
        task_cancel_shipment,
        task_expiration_sweep,
        task_reconcile_pending,
    ]

    cron_jobs = [
        cron(task_expiration_sweep, minute=0, run_at_startup=False),
        cron(
            task_reconcile_pending,
            minute={0, 5, 10, 15, 20, 25, 30, 35, 40, 45, 50, 55},
            run_at_startup=True,
        ),
    ]

    max_tries = 5
