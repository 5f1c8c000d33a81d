"""
Shared fixtures: settings, a fake relying-party client, a fake BigCommerce
served through httpx.MockTransport, and a controllable clock.
"""

import json
from datetime import datetime, timedelta, timezone
from http.cookies import SimpleCookie
from typing import Any, Dict, List, Optional

import httpx
import pytest

from checkout_gate.auth.rp_client import AuthorizationRequest, TokenSet
from checkout_gate.config import Settings


STORE_HASH = "abc123"
CATEGORY_ID = 42


# ============================================================================
# Clock
# ============================================================================

class MutableClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return MutableClock()


# ============================================================================
# Settings
# ============================================================================

@pytest.fixture
def settings():
    """Settings for a test store with bypass code 'letmein'"""
    return Settings(
        STORE_DOMAIN="shop.example.com",
        STORE_HASH=STORE_HASH,
        CATEGORY_ID=CATEGORY_ID,
        ACCESS_TOKEN="bc-access-token",
        STOREFRONT_TOKEN="sf-token-0",
        CLIENT_ID="https://rp.example.com/client",
        SESSION_TOKEN_SECRET="test-session-secret-1234567890123456",
        EXPECTED_ISSUER="https://bank1.example.com",
        BYPASS_CODES="letmein",
        SESSION_SWEEP_SECONDS=0,
        CATALOG_WARM_ON_STARTUP=False,
    )


# ============================================================================
# Relying-party client
# ============================================================================

class FakeAuthorizationClient:
    """In-memory AuthorizationClient; each start yields distinct secrets."""

    def __init__(self):
        self.claims: Dict[str, Any] = {
            "iss": "https://bank1.example.com",
            "aud": "https://rp.example.com/client",
            "sub": "shopper-1",
            "exp": 9999999999,
            "iat": 1700000000,
            "over18": True,
        }
        self.started: List[Dict[str, Any]] = []
        self.completed: List[Dict[str, Any]] = []
        self.exchange_error: Optional[Exception] = None
        self.participants = [
            {
                "OrganisationId": "org-1",
                "AuthorisationServers": [
                    {"AuthorisationServerId": "bank1", "CustomerFriendlyName": "Bank One"},
                ],
            }
        ]
        self.participant_calls = 0

    async def start_authorization(self, bank_id, essential_claims, voluntary_claims, purpose):
        n = len(self.started) + 1
        self.started.append(
            {"bank_id": bank_id, "essential_claims": list(essential_claims), "purpose": purpose}
        )
        return AuthorizationRequest(
            auth_url=f"https://{bank_id}.example.com/authorize?request_uri=urn:par:{n}",
            code_verifier=f"verifier-{n}",
            state=f"state-{n}",
            nonce=f"nonce-{n}",
            interaction_id=f"interaction-{n}",
        )

    async def complete_authorization(self, bank_id, callback_params, code_verifier, state, nonce):
        self.completed.append(
            {"bank_id": bank_id, "code": callback_params.get("code"), "state": state, "nonce": nonce}
        )
        if self.exchange_error is not None:
            raise self.exchange_error

        claims = dict(self.claims)
        claims.setdefault("nonce", nonce)
        return TokenSet(
            claims=claims,
            id_token="eyJhbGciOiJQUzI1NiJ9.payload.signature",
            access_token="access-token",
            token_type="Bearer",
            id_token_header={"alg": "PS256", "kid": "key-1"},
            interaction_id="interaction-xyz",
        )

    async def get_participants(self):
        self.participant_calls += 1
        return self.participants


@pytest.fixture
def rp_client():
    return FakeAuthorizationClient()


# ============================================================================
# BigCommerce
# ============================================================================

def product(sku: str, *variant_skus: str) -> Dict[str, Any]:
    return {
        "node": {
            "sku": sku,
            "variants": {"edges": [{"node": {"sku": v}} for v in variant_skus]},
        }
    }


def products_page(edges: List[Dict[str, Any]], end_cursor: Optional[str] = None) -> Dict[str, Any]:
    return {
        "data": {
            "site": {
                "category": {
                    "name": "Knives",
                    "products": {
                        "pageInfo": {"hasNextPage": end_cursor is not None, "endCursor": end_cursor},
                        "edges": edges,
                    },
                }
            }
        }
    }


def line_item(item_id: str, sku: Optional[str], name: str = "Item") -> Dict[str, Any]:
    return {"id": item_id, "sku": sku, "name": name, "quantity": 1, "product_id": 1, "variant_id": 2}


class FakeBigCommerce:
    """
    Routes management and storefront API calls for one store.

    Attributes:
        pages: GraphQL responses keyed by the ``after`` cursor (None = first page)
        carts: cart_id -> list of line items (all physical)
        rejected_tokens: storefront tokens answered with 401
        failing_deletes: item ids whose DELETE returns 500
        catalog_status: when set, every GraphQL call returns this status
    """

    def __init__(self):
        self.pages: Dict[Optional[str], Dict[str, Any]] = {
            None: products_page([product("KNIFE-1")]),
        }
        self.carts: Dict[str, List[Dict[str, Any]]] = {}
        self.rejected_tokens = set()
        self.failing_deletes = set()
        self.catalog_status: Optional[int] = None
        self.minted = 0
        self.requests: List[httpx.Request] = []

    def calls(self, method: str, path_fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and path_fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == f"store-{STORE_HASH}.mybigcommerce.com" and path == "/graphql":
            return self._graphql(request)

        prefix = f"/stores/{STORE_HASH}/v3"
        if request.method == "POST" and path == f"{prefix}/storefront/api-token":
            self.minted += 1
            return httpx.Response(200, json={"data": {"token": f"sf-token-{self.minted}"}})

        if path.startswith(f"{prefix}/carts/"):
            return self._cart(request, path[len(f"{prefix}/carts/"):])

        return httpx.Response(404, json={"title": "Not Found"})

    def _graphql(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").replace("Bearer ", "")
        if token in self.rejected_tokens:
            return httpx.Response(401, text="JWT is expired")
        if self.catalog_status is not None:
            return httpx.Response(self.catalog_status, text="upstream error")

        body = json.loads(request.content)
        after = body["variables"].get("after")
        return httpx.Response(200, json=self.pages[after])

    def _cart(self, request: httpx.Request, rest: str) -> httpx.Response:
        parts = rest.split("/")
        cart_id = parts[0]
        if cart_id not in self.carts:
            return httpx.Response(404, json={"title": "Cart not found"})

        if request.method == "GET" and len(parts) == 1:
            return httpx.Response(
                200,
                json={
                    "data": {
                        "id": cart_id,
                        "line_items": {
                            "physical_items": self.carts[cart_id],
                            "digital_items": [],
                            "gift_certificates": [],
                            "custom_items": [],
                        },
                    }
                },
            )

        if request.method == "DELETE" and len(parts) == 3 and parts[1] == "items":
            item_id = parts[2]
            if item_id in self.failing_deletes:
                return httpx.Response(500, json={"title": "Internal error"})
            self.carts[cart_id] = [i for i in self.carts[cart_id] if i["id"] != item_id]
            return httpx.Response(200, json={"data": {"id": cart_id}})

        return httpx.Response(405)


@pytest.fixture
def bigcommerce():
    return FakeBigCommerce()


@pytest.fixture
def http_client(bigcommerce):
    return httpx.AsyncClient(transport=httpx.MockTransport(bigcommerce.handler))


# ============================================================================
# Cookies
# ============================================================================

def parse_set_cookies(response) -> Dict[str, Any]:
    """Name -> Morsel for every Set-Cookie header on ``response``."""
    jar = SimpleCookie()
    for header in response.headers.get_list("set-cookie"):
        jar.load(header)
    return dict(jar)


def cookie_header(values: Dict[str, str]) -> Dict[str, str]:
    return {"Cookie": "; ".join(f"{k}={v}" for k, v in values.items())}
