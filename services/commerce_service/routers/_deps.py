"""Shared router dependencies: per-process collaborators kept on ``app.state``."""

from typing import Optional

from fastapi import Header, Request
from services.commerce_service.dispatch import BackgroundDispatcher
from services.commerce_service.gateway_client import GatewayClient
from services.commerce_service.shipping_client import ShippingClient
from services.commerce_service.services.settings_lookup import SettingsLookup
from sqlalchemy.ext.asyncio import async_sessionmaker

DEFAULT_ADMIN_ACTOR = "admin"


def get_settings_lookup(request: Request) -> SettingsLookup:
    return request.app.state.settings_lookup


def get_dispatcher(request: Request) -> Optional[BackgroundDispatcher]:
    return getattr(request.app.state, "dispatcher", None)


def get_gateway(request: Request) -> GatewayClient:
    return request.app.state.gateway


def get_shipping(request: Request) -> Optional[ShippingClient]:
    return getattr(request.app.state, "shipping", None)


def get_admin_actor(x_admin_actor: Optional[str] = Header(None)) -> str:
    """Name recorded in order logs for admin actions."""
    return x_admin_actor or DEFAULT_ADMIN_ACTOR


def get_session_factory(request: Request) -> async_sessionmaker:
    """Session factory for operations that open one transaction per unit of work."""
    return request.app.state.session_factory
