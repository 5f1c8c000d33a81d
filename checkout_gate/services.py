"""
Service container.

Every component is constructed here, once per application, and stored on
``app.state.services``. Route handlers reach the components through the
getters in ``dependencies``.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import httpx

from .auth.flow import AuthorizationFlowController
from .auth.rp_client import AuthorizationClient, ConnectIdClient
from .auth.session import SessionTokenIssuer
from .auth.store import Clock, VerificationSessionStore
from .cart.client import CartClient
from .cart.gate import CartGate
from .catalog.cache import CatalogCache
from .catalog.client import CatalogClient
from .catalog.tokens import StorefrontTokenProvider
from .config import Settings
from .diagnostics import TokenSetLog

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    http_client: httpx.AsyncClient
    store: VerificationSessionStore
    rp_client: AuthorizationClient
    flow: AuthorizationFlowController
    catalog: CatalogCache
    cart_client: CartClient
    gate: CartGate
    token_log: TokenSetLog
    owned_clients: List[httpx.AsyncClient] = field(default_factory=list)

    async def init(self) -> None:
        await self.store.init()

    async def teardown(self) -> None:
        await self.store.teardown()
        for client in self.owned_clients:
            await client.aclose()
        self.owned_clients.clear()


def _rp_http_client(settings: Settings) -> Optional[httpx.AsyncClient]:
    """Dedicated mTLS client for the authorisation servers, when a transport cert is configured."""
    if not settings.TRANSPORT_CERT_PATH:
        return None

    cert = (
        (settings.TRANSPORT_CERT_PATH, settings.TRANSPORT_KEY_PATH)
        if settings.TRANSPORT_KEY_PATH
        else settings.TRANSPORT_CERT_PATH
    )
    logger.info("Using mutual TLS for authorisation server requests")
    return httpx.AsyncClient(
        cert=cert,
        verify=settings.CA_CERT_PATH or True,
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS),
    )


def build_services(
    settings: Settings,
    http_client: Optional[httpx.AsyncClient] = None,
    rp_client: Optional[AuthorizationClient] = None,
    clock: Optional[Clock] = None,
) -> ServiceContainer:
    """
    Construct every component for ``settings``.

    Args:
        settings: Application settings
        http_client: Shared client for the commerce APIs (created and owned
            by the container when not supplied)
        rp_client: Relying-party client (a ConnectIdClient is built when
            not supplied)
        clock: Clock for the session store
    """
    owned: List[httpx.AsyncClient] = []
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS))
        owned.append(http_client)

    issuer = SessionTokenIssuer(settings.SESSION_TOKEN_SECRET, settings.SESSION_TOKEN_ALGORITHM)
    store = VerificationSessionStore(
        issuer,
        verification_ttl=timedelta(seconds=settings.VERIFICATION_TTL_SECONDS),
        pending_ttl=timedelta(seconds=settings.PENDING_FLOW_TTL_SECONDS),
        clock=clock,
        sweep_interval=settings.SESSION_SWEEP_SECONDS,
    )

    if rp_client is None:
        rp_http = _rp_http_client(settings)
        if rp_http is not None:
            owned.append(rp_http)
        signing_key = (
            Path(settings.SIGNING_KEY_PATH).read_text(encoding="utf-8")
            if settings.SIGNING_KEY_PATH
            else None
        )
        rp_client = ConnectIdClient(
            rp_http or http_client,
            client_id=settings.CLIENT_ID,
            redirect_uri=settings.redirect_uri,
            participants_uri=settings.REGISTRY_PARTICIPANTS_URI,
            id_token_alg=settings.ID_TOKEN_SIGNING_ALG,
            signing_key=signing_key,
            signing_kid=settings.SIGNING_KID,
            cache_seconds=settings.PARTICIPANTS_CACHE_SECONDS,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        )

    token_log = TokenSetLog()
    flow = AuthorizationFlowController(
        rp_client,
        store,
        token_log=token_log,
        age_claim=settings.AGE_CLAIM,
        default_purpose=settings.PURPOSE,
    )

    tokens = StorefrontTokenProvider(
        http_client,
        store_url=settings.bigcommerce_store_url,
        access_token=settings.ACCESS_TOKEN,
        allowed_origins=settings.allowed_origins_list,
        channel_id=settings.STOREFRONT_CHANNEL_ID,
        lifetime_seconds=settings.STOREFRONT_TOKEN_LIFETIME_SECONDS,
        initial_token=settings.STOREFRONT_TOKEN,
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
    )
    catalog = CatalogCache(
        CatalogClient(http_client, settings.storefront_graphql_url, settings.UPSTREAM_TIMEOUT_SECONDS),
        tokens,
        settings.CATEGORY_ID,
    )

    cart_client = CartClient(
        http_client,
        store_url=settings.bigcommerce_store_url,
        access_token=settings.ACCESS_TOKEN,
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
    )
    gate = CartGate(store, catalog, cart_client, bypass_codes=settings.bypass_codes_list)

    return ServiceContainer(
        settings=settings,
        http_client=http_client,
        store=store,
        rp_client=rp_client,
        flow=flow,
        catalog=catalog,
        cart_client=cart_client,
        gate=gate,
        token_log=token_log,
        owned_clients=owned,
    )


__all__ = ["ServiceContainer", "build_services"]
