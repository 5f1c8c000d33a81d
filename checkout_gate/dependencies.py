"""
FastAPI dependencies.

Each getter reads one component from ``app.state.services`` (built by
``services.build_services``). Tests pass their own container to
``create_app``.
"""

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from .auth.flow import AuthorizationFlowController
    from .auth.rp_client import AuthorizationClient
    from .auth.store import VerificationSessionStore
    from .cart.client import CartClient
    from .cart.gate import CartGate
    from .catalog.cache import CatalogCache
    from .config import Settings
    from .diagnostics import TokenSetLog
    from .services import ServiceContainer


def get_services(request: Request) -> "ServiceContainer":
    return request.app.state.services


def get_app_settings(request: Request) -> "Settings":
    return get_services(request).settings


def get_flow(request: Request) -> "AuthorizationFlowController":
    return get_services(request).flow


def get_store(request: Request) -> "VerificationSessionStore":
    return get_services(request).store


def get_gate(request: Request) -> "CartGate":
    return get_services(request).gate


def get_catalog(request: Request) -> "CatalogCache":
    return get_services(request).catalog


def get_cart_client(request: Request) -> "CartClient":
    return get_services(request).cart_client


def get_rp_client(request: Request) -> "AuthorizationClient":
    return get_services(request).rp_client


def get_token_log(request: Request) -> "TokenSetLog":
    return get_services(request).token_log


__all__ = [
    "get_services",
    "get_app_settings",
    "get_flow",
    "get_store",
    "get_gate",
    "get_catalog",
    "get_cart_client",
    "get_rp_client",
    "get_token_log",
]
