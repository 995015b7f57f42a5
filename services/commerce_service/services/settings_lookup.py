"""Runtime settings lookup with a short-lived in-process cache.

One ``SettingsLookup`` is built per process (app lifespan, worker startup) and
passed to the operations that need it. Values come from ``commerce_settings``
rows and fall back to the environment-backed ``Settings`` defaults.
"""

import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from libs.common.config import Settings, get_settings
from libs.common.logging import get_logger
from services.commerce_service.models import StoreSetting
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PO_DEPOSIT_PERCENTAGE = "po_deposit_percentage"
PO_BALANCE_DUE_DAYS = "po_balance_due_days"
INVOICE_TTL_HOURS = "invoice_ttl_hours"
REMINDER_AFTER_HOURS = "reminder_after_hours"

_MISSING = object()


class SettingsLookup:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings or get_settings()
        self._ttl = (
            ttl_seconds
            if ttl_seconds is not None
            else float(self._settings.SETTINGS_CACHE_TTL_SECONDS)
        )
        self._clock = clock
        self._cache: dict[str, tuple[float, Optional[str]]] = {}

    def _defaults(self) -> dict[str, str]:
        return {
            PO_DEPOSIT_PERCENTAGE: str(self._settings.PO_DEPOSIT_PERCENTAGE),
            PO_BALANCE_DUE_DAYS: str(self._settings.PO_BALANCE_DUE_DAYS),
            INVOICE_TTL_HOURS: str(self._settings.INVOICE_TTL_HOURS),
            REMINDER_AFTER_HOURS: str(self._settings.REMINDER_AFTER_HOURS),
        }

    def invalidate(self, key: Optional[str] = None) -> None:
        if key is None:
            self._cache.clear()
        else:
            self._cache.pop(key, None)

    async def get(self, db: AsyncSession, key: str) -> Optional[str]:
        cached = self._cache.get(key, _MISSING)
        now = self._clock()
        if cached is not _MISSING and cached[0] > now:
            return cached[1]

        result = await db.execute(select(StoreSetting.value).where(StoreSetting.key == key))
        value = result.scalar_one_or_none()
        if value is None:
            value = self._defaults().get(key)
        self._cache[key] = (now + self._ttl, value)
        return value

    async def get_int(self, db: AsyncSession, key: str, default: int) -> int:
        raw = await self.get(db, key)
        if raw is None:
            return default
        try:
            return int(raw)
        except ValueError:
            logger.warning("Setting %s=%r is not an integer, using %s", key, raw, default)
            return default

    async def get_decimal(self, db: AsyncSession, key: str, default: Decimal) -> Decimal:
        raw = await self.get(db, key)
        if raw is None:
            return default
        try:
            return Decimal(raw)
        except InvalidOperation:
            logger.warning("Setting %s=%r is not numeric, using %s", key, raw, default)
            return default

    async def deposit_percentage(self, db: AsyncSession) -> Decimal:
        value = await self.get_decimal(db, PO_DEPOSIT_PERCENTAGE, Decimal("30"))
        if value <= 0 or value > 100:
            return Decimal("30")
        return value

    async def balance_due_days(self, db: AsyncSession) -> int:
        return max(await self.get_int(db, PO_BALANCE_DUE_DAYS, 7), 1)

    async def invoice_ttl_hours(self, db: AsyncSession) -> int:
        return max(await self.get_int(db, INVOICE_TTL_HOURS, 24), 1)

    async def reminder_after_hours(self, db: AsyncSession) -> int:
        return max(await self.get_int(db, REMINDER_AFTER_HOURS, 20), 0)
