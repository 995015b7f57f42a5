"""Customer notifications decided by order/payment operations.

Operations collect ``PendingNotification`` values while their transaction is
open and hand them to the dispatcher only after commit.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from libs.common.emails.client import get_email_client
from libs.common.logging import get_logger
from services.commerce_service.dispatch import BackgroundDispatcher

logger = get_logger(__name__)

TEMPLATE_PREFIX = "commerce_"


@dataclass(frozen=True)
class PendingNotification:
    kind: str
    dedupe_key: str
    payload: dict = field(default_factory=dict)


async def dispatch_notifications(
    dispatcher: Optional[BackgroundDispatcher],
    notifications: Iterable[PendingNotification],
) -> None:
    if dispatcher is None:
        return
    for notification in notifications:
        await dispatcher.notify(
            notification.kind,
            {**notification.payload, "dedupe_key": notification.dedupe_key},
            dedupe_key=notification.dedupe_key,
        )


async def send_notification(kind: str, payload: dict) -> bool:
    """Deliver one notification; receivers de-duplicate on ``dedupe_key``."""
    to_email = payload.get("email")
    if not to_email:
        logger.info("Skipping %s notification without recipient", kind)
        return False

    sent = await get_email_client().send_template(
        template_type=f"{TEMPLATE_PREFIX}{kind}",
        to_email=to_email,
        template_data={k: v for k, v in payload.items() if k != "email"},
        idempotency_key=payload.get("dedupe_key"),
    )
    if not sent:
        logger.warning(
            "Notification %s was not delivered",
            kind,
            extra={"extra_fields": {"kind": kind, "order": payload.get("order_number")}},
        )
    return sent
