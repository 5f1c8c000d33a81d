"""
Unit Tests for the ConnectID Relying-Party Client
=================================================

Test Coverage:
--------------
1. Participants directory and discovery caching
2. PAR request contents (PKCE S256, claims, purpose)
3. Token exchange and PS256 ID token verification against JWKS
4. State / nonce / algorithm / issuer failures
5. Upstream errors wrapped with the interaction id
"""

import json
import time
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from checkout_gate.auth.rp_client import (
    ConnectIdClient,
    build_claims_request,
    generate_code_challenge,
)
from checkout_gate.errors import SessionMismatch, UpstreamUnavailable, ValidationError


CLIENT_ID = "https://rp.example.com/client"
REDIRECT_URI = "https://shop.example.com/checkout"
ISSUER = "https://bank1.example.com"
DIRECTORY = "https://directory.example.com/participants"


@pytest.fixture(scope="module")
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeBank:
    def __init__(self, signing_key):
        self.signing_key = signing_key
        self.requests = []
        self.id_token_claims = {}
        self.id_token_alg = "PS256"
        self.token_status = 200
        self.nonce_for_token = None
        self.overrides = {}
        self.directory_extra = []
        self.jwks_extra = []

    def id_token(self, nonce):
        now = int(time.time())
        claims = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "shopper-1",
            "iat": now,
            "exp": now + 300,
            "nonce": nonce,
            "over18": True,
        }
        claims.update(self.id_token_claims)
        return jwt.encode(claims, self.signing_key, algorithm=self.id_token_alg, headers={"kid": "key-1"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url in self.overrides:
            return self.overrides[url]

        if url == DIRECTORY:
            return httpx.Response(200, json=self.directory_extra + [{
                "OrganisationId": "org-1",
                "AuthorisationServers": [{
                    "AuthorisationServerId": "bank1",
                    "OpenIDDiscoveryDocument": f"{ISSUER}/.well-known/openid-configuration",
                }],
            }])

        if url == f"{ISSUER}/.well-known/openid-configuration":
            return httpx.Response(200, json={
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/authorize",
                "pushed_authorization_request_endpoint": f"{ISSUER}/par",
                "token_endpoint": f"{ISSUER}/token",
                "jwks_uri": f"{ISSUER}/jwks",
            })

        if url == f"{ISSUER}/par":
            return httpx.Response(
                201,
                json={"request_uri": "urn:ietf:params:oauth:request_uri:abc", "expires_in": 60},
                headers={"x-fapi-interaction-id": "par-interaction"},
            )

        if url == f"{ISSUER}/token":
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "code expired"},
                    headers={"x-fapi-interaction-id": "token-interaction"},
                )
            form = parse_qs(request.content.decode())
            if form["code"] != ["good-code"]:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "id_token": self.id_token(self.nonce_for_token),
                    "access_token": "at",
                    "token_type": "Bearer",
                },
                headers={"x-fapi-interaction-id": "token-interaction"},
            )

        if url == f"{ISSUER}/jwks":
            jwk = json.loads(RSAAlgorithm.to_jwk(self.signing_key.public_key()))
            jwk.update({"kid": "key-1", "use": "sig", "alg": "PS256"})
            return httpx.Response(200, json={"keys": self.jwks_extra + [jwk]})

        return httpx.Response(404)

    def calls(self, path):
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture
def bank(signing_key):
    return FakeBank(signing_key)


@pytest.fixture
def client(bank):
    http = httpx.AsyncClient(transport=httpx.MockTransport(bank.handler))
    return ConnectIdClient(
        http,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        participants_uri=DIRECTORY,
    )


# ============================================================================
# Helpers
# ============================================================================

def test_code_challenge_matches_rfc7636_example():
    verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
    assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"


def test_claims_request_marks_essential():
    assert build_claims_request(["over18"], ["name"]) == {
        "id_token": {"name": None, "over18": {"essential": True}}
    }


# ============================================================================
# Directory
# ============================================================================

@pytest.mark.asyncio
async def test_participants_are_cached(client, bank):
    first = await client.get_participants()
    second = await client.get_participants()

    assert first == second
    assert len(bank.calls("/participants")) == 1


@pytest.mark.asyncio
async def test_unknown_bank_rejected(client):
    with pytest.raises(ValidationError):
        await client.start_authorization("bank9", ["over18"], [], "Age check")


# ============================================================================
# PAR
# ============================================================================

@pytest.mark.asyncio
async def test_start_authorization_sends_par(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")

    par = parse_qs(bank.calls("/par")[0].content.decode())
    assert par["client_id"] == [CLIENT_ID]
    assert par["redirect_uri"] == [REDIRECT_URI]
    assert par["state"] == [request.state]
    assert par["nonce"] == [request.nonce]
    assert par["code_challenge"] == [generate_code_challenge(request.code_verifier)]
    assert par["code_challenge_method"] == ["S256"]
    assert par["purpose"] == ["Age check"]
    assert json.loads(par["claims"][0]) == {"id_token": {"over18": {"essential": True}}}
    assert "client_assertion" not in par

    auth_url = urlparse(request.auth_url)
    assert f"{auth_url.scheme}://{auth_url.netloc}{auth_url.path}" == f"{ISSUER}/authorize"
    assert parse_qs(auth_url.query) == {
        "client_id": [CLIENT_ID],
        "request_uri": ["urn:ietf:params:oauth:request_uri:abc"],
    }
    assert request.interaction_id == "par-interaction"


@pytest.mark.asyncio
async def test_each_authorization_has_fresh_secrets(client):
    first = await client.start_authorization("bank1", ["over18"], [], "Age check")
    second = await client.start_authorization("bank1", ["over18"], [], "Age check")

    assert first.state != second.state
    assert first.nonce != second.nonce
    assert first.code_verifier != second.code_verifier


# ============================================================================
# Token exchange
# ============================================================================

@pytest.mark.asyncio
async def test_complete_authorization_verifies_id_token(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = request.nonce

    token_set = await client.complete_authorization(
        "bank1",
        {"code": "good-code", "state": request.state, "iss": ISSUER},
        code_verifier=request.code_verifier,
        state=request.state,
        nonce=request.nonce,
    )

    assert token_set.claims["over18"] is True
    assert token_set.claims["aud"] == CLIENT_ID
    assert token_set.id_token_header["alg"] == "PS256"
    assert token_set.token_type == "Bearer"
    assert token_set.interaction_id == "token-interaction"

    form = parse_qs(bank.calls("/token")[0].content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code_verifier"] == [request.code_verifier]


@pytest.mark.asyncio
async def test_callback_state_mismatch(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")

    with pytest.raises(SessionMismatch):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code", "state": "other"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )
    assert bank.calls("/token") == []


@pytest.mark.asyncio
async def test_callback_issuer_mismatch(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")

    with pytest.raises(UpstreamUnavailable):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code", "iss": "https://evil.example.com"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )


@pytest.mark.asyncio
async def test_nonce_mismatch(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = "someone-elses-nonce"

    with pytest.raises(SessionMismatch):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )


@pytest.mark.asyncio
async def test_unexpected_algorithm_rejected(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = request.nonce
    bank.id_token_alg = "RS256"

    with pytest.raises(UpstreamUnavailable, match="unexpected algorithm"):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )


@pytest.mark.asyncio
async def test_wrong_audience_rejected(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = request.nonce
    bank.id_token_claims = {"aud": "https://someone-else.example.com"}

    with pytest.raises(UpstreamUnavailable, match="verification failed"):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )


@pytest.mark.asyncio
async def test_token_endpoint_error_wrapped(client, bank):
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.token_status = 400

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await client.complete_authorization(
            "bank1",
            {"code": "good-code"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )

    assert exc_info.value.upstream_status == 400
    assert exc_info.value.details["x_fapi_interaction_id"] == "token-interaction"
    assert "code expired" in exc_info.value.message


@pytest.mark.asyncio
async def test_bank_error_in_callback(client):
    with pytest.raises(UpstreamUnavailable):
        await client.complete_authorization(
            "bank1",
            {"error": "access_denied", "error_description": "user cancelled"},
            code_verifier="v",
            state="s",
            nonce="n",
        )


# ============================================================================
# Malformed upstream documents
# ============================================================================

@pytest.mark.asyncio
async def test_non_object_error_body_wrapped(client, bank):
    bank.overrides[DIRECTORY] = httpx.Response(503, json=["maintenance"])

    with pytest.raises(UpstreamUnavailable) as exc_info:
        await client.get_participants()

    assert exc_info.value.upstream_status == 503
    assert "Request failed" in exc_info.value.message


@pytest.mark.asyncio
async def test_malformed_directory_entries_ignored(client, bank):
    bank.directory_extra = ["not-an-organisation", {"AuthorisationServers": ["not-a-server", None]}]

    request = await client.start_authorization("bank1", ["over18"], [], "Age check")

    assert request.auth_url.startswith(f"{ISSUER}/authorize?")


@pytest.mark.asyncio
async def test_malformed_jwks_entries_ignored(client, bank):
    bank.jwks_extra = ["not-a-key", 42]
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = request.nonce

    token_set = await client.complete_authorization(
        "bank1",
        {"code": "good-code"},
        code_verifier=request.code_verifier,
        state=request.state,
        nonce=request.nonce,
    )

    assert token_set.claims["over18"] is True


@pytest.mark.asyncio
async def test_jwks_without_key_list_rejected(client, bank):
    bank.overrides[f"{ISSUER}/jwks"] = httpx.Response(200, json={"keys": "none"})
    request = await client.start_authorization("bank1", ["over18"], [], "Age check")
    bank.nonce_for_token = request.nonce

    with pytest.raises(UpstreamUnavailable, match="missing 'keys'"):
        await client.complete_authorization(
            "bank1",
            {"code": "good-code"},
            code_verifier=request.code_verifier,
            state=request.state,
            nonce=request.nonce,
        )
