"""
Relying-party client for the bank identity providers.

This module implements the Pushed Authorisation Request (PAR) flow with PKCE
against the authorisation servers listed in the identity directory:

- Fetching and caching the participants directory and discovery documents
- Sending the PAR with the requested claims and building the redirect URL
- Exchanging the authorisation code for tokens
- Verifying the returned ID token against the bank's JWKS

The flow controller only depends on the AuthorizationClient protocol, so
the concrete client can be swapped or mocked.
"""

import base64
import hashlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlencode

import httpx
import jwt
from jwt.exceptions import InvalidTokenError, PyJWKError

from ..errors import SessionMismatch, UpstreamUnavailable, ValidationError
from .store import generate_secret

logger = logging.getLogger(__name__)


INTERACTION_ID_HEADER = "x-fapi-interaction-id"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


# =============================================================================
# Interface
# =============================================================================

@dataclass
class AuthorizationRequest:
    auth_url: str
    code_verifier: str
    state: str
    nonce: str
    interaction_id: Optional[str] = None


@dataclass
class TokenSet:
    claims: Dict[str, Any]
    id_token: str
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    id_token_header: Dict[str, Any] = field(default_factory=dict)
    interaction_id: Optional[str] = None


class AuthorizationClient(Protocol):
    """The two operations the flow controller needs from an OIDC engine."""

    async def start_authorization(
        self,
        bank_id: str,
        essential_claims: Sequence[str],
        voluntary_claims: Sequence[str],
        purpose: str,
    ) -> AuthorizationRequest:
        ...

    async def complete_authorization(
        self,
        bank_id: str,
        callback_params: Mapping[str, str],
        code_verifier: str,
        state: str,
        nonce: str,
    ) -> TokenSet:
        ...

    async def get_participants(self) -> List[Dict[str, Any]]:
        ...


# =============================================================================
# PKCE Helper Functions
# =============================================================================

def generate_code_challenge(verifier: str) -> str:
    """
    Generate code challenge from verifier using S256 method.

    Returns:
        Base64-URL-encoded SHA256 hash of verifier
    """
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def build_claims_request(
    essential_claims: Sequence[str],
    voluntary_claims: Sequence[str] = (),
) -> Dict[str, Any]:
    """Build the OIDC ``claims`` request parameter for the ID token."""
    id_token_claims: Dict[str, Any] = {name: None for name in voluntary_claims}
    id_token_claims.update({name: {"essential": True} for name in essential_claims})
    return {"id_token": id_token_claims}


# =============================================================================
# ConnectID client
# =============================================================================

class ConnectIdClient:
    """
    httpx implementation of AuthorizationClient.

    Args:
        http_client: Client used for every call (configure mTLS on it)
        client_id: Registered relying party client ID
        redirect_uri: Redirect URI registered for the client
        participants_uri: Directory endpoint listing authorisation servers
        id_token_alg: Algorithm ID tokens must be signed with
        signing_key: PEM private key for private_key_jwt (optional)
        signing_kid: Key ID advertised for the signing key
        cache_seconds: TTL for directory, discovery and JWKS documents
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        client_id: str,
        redirect_uri: str,
        participants_uri: str,
        id_token_alg: str = "PS256",
        signing_key: Optional[str] = None,
        signing_kid: Optional[str] = None,
        cache_seconds: int = 600,
        timeout: float = 10.0,
    ):
        self._http = http_client
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self._participants_uri = participants_uri
        self._id_token_alg = id_token_alg
        self._signing_key = signing_key
        self._signing_kid = signing_kid
        self._cache_seconds = cache_seconds
        self._timeout = httpx.Timeout(timeout)

        self._documents: Dict[str, Tuple[float, Any]] = {}

    # -------------------------------------------------------------------------
    # Directory / discovery
    # -------------------------------------------------------------------------

    async def get_participants(self) -> List[Dict[str, Any]]:
        """Fetch the participants directory (cached)."""
        participants = await self._cached_json(self._participants_uri)
        if not isinstance(participants, list):
            raise UpstreamUnavailable("Invalid participants directory response")
        return participants

    async def _discovery(self, bank_id: str) -> Dict[str, Any]:
        for organisation in await self.get_participants():
            if not isinstance(organisation, dict):
                continue
            for server in organisation.get("AuthorisationServers") or []:
                if not isinstance(server, dict) or server.get("AuthorisationServerId") != bank_id:
                    continue
                discovery_uri = server.get("OpenIDDiscoveryDocument")
                if not discovery_uri:
                    raise UpstreamUnavailable(
                        "Authorisation server has no discovery document",
                        details={"authorisation_server_id": bank_id},
                    )
                document = await self._cached_json(discovery_uri)
                if not isinstance(document, dict):
                    raise UpstreamUnavailable("Invalid discovery document")
                return document

        raise ValidationError(
            "Unknown authorisation server",
            details={"authorisation_server_id": bank_id},
        )

    async def _jwks(self, jwks_uri: str, force_refresh: bool = False) -> Dict[str, Any]:
        if force_refresh:
            self._documents.pop(jwks_uri, None)
        jwks = await self._cached_json(jwks_uri)
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise UpstreamUnavailable("Invalid JWKS response: missing 'keys' field")
        return jwks

    async def _cached_json(self, url: str) -> Any:
        now = time.time()
        cached = self._documents.get(url)
        if cached and (now - cached[0]) < self._cache_seconds:
            return cached[1]

        response = await self._request("GET", url)
        document = self._json(response)
        self._documents[url] = (now, document)
        return document

    # -------------------------------------------------------------------------
    # PAR
    # -------------------------------------------------------------------------

    async def start_authorization(
        self,
        bank_id: str,
        essential_claims: Sequence[str],
        voluntary_claims: Sequence[str],
        purpose: str,
    ) -> AuthorizationRequest:
        """
        Send the pushed authorisation request and build the redirect URL.

        Returns:
            AuthorizationRequest with the URL to send the browser to and the
            secrets the callback will need
        """
        discovery = await self._discovery(bank_id)
        par_endpoint = discovery.get("pushed_authorization_request_endpoint")
        authorization_endpoint = discovery.get("authorization_endpoint")
        if not par_endpoint or not authorization_endpoint:
            raise UpstreamUnavailable(
                "Authorisation server does not advertise PAR support",
                details={"authorisation_server_id": bank_id},
            )

        state = generate_secret()
        nonce = generate_secret()
        code_verifier = generate_secret()

        payload = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": "openid",
            "redirect_uri": self.redirect_uri,
            "state": state,
            "nonce": nonce,
            "code_challenge": generate_code_challenge(code_verifier),
            "code_challenge_method": "S256",
            "claims": json.dumps(build_claims_request(essential_claims, voluntary_claims)),
            "purpose": purpose,
        }
        payload.update(self._client_authentication(discovery.get("issuer") or par_endpoint))

        interaction_id = str(uuid.uuid4())
        response = await self._request(
            "POST",
            par_endpoint,
            data=payload,
            headers={INTERACTION_ID_HEADER: interaction_id},
        )
        body = self._json(response)

        request_uri = body.get("request_uri") if isinstance(body, dict) else None
        if not request_uri:
            raise UpstreamUnavailable("PAR response missing request_uri")

        auth_url = f"{authorization_endpoint}?{urlencode({'client_id': self.client_id, 'request_uri': request_uri})}"

        logger.info(
            "PAR sent",
            extra={
                "authorisation_server_id": bank_id,
                "x_fapi_interaction_id": response.headers.get(INTERACTION_ID_HEADER, interaction_id),
            },
        )

        return AuthorizationRequest(
            auth_url=auth_url,
            code_verifier=code_verifier,
            state=state,
            nonce=nonce,
            interaction_id=response.headers.get(INTERACTION_ID_HEADER, interaction_id),
        )

    # -------------------------------------------------------------------------
    # Token exchange
    # -------------------------------------------------------------------------

    async def complete_authorization(
        self,
        bank_id: str,
        callback_params: Mapping[str, str],
        code_verifier: str,
        state: str,
        nonce: str,
    ) -> TokenSet:
        """
        Exchange the authorisation code for tokens and verify the ID token.

        Raises:
            SessionMismatch: If the callback or ID token belongs to another flow
            UpstreamUnavailable: If the bank rejects the exchange or returns an
                invalid ID token
        """
        if callback_params.get("error"):
            raise UpstreamUnavailable(
                "Authorisation server returned an error",
                details={
                    "error": callback_params.get("error"),
                    "error_description": callback_params.get("error_description"),
                },
            )

        returned_state = callback_params.get("state")
        if returned_state is not None and returned_state != state:
            raise SessionMismatch("Invalid state value in authorisation response")

        discovery = await self._discovery(bank_id)
        issuer = discovery.get("issuer")
        token_endpoint = discovery.get("token_endpoint")
        if not token_endpoint or not issuer:
            raise UpstreamUnavailable("Discovery document missing token endpoint or issuer")

        returned_iss = callback_params.get("iss")
        if returned_iss is not None and returned_iss != issuer:
            raise UpstreamUnavailable(
                "Issuer in authorisation response does not match the authorisation server",
                details={"iss": returned_iss},
            )

        payload = {
            "grant_type": "authorization_code",
            "code": callback_params.get("code", ""),
            "redirect_uri": self.redirect_uri,
            "code_verifier": code_verifier,
            "client_id": self.client_id,
        }
        payload.update(self._client_authentication(issuer))

        interaction_id = str(uuid.uuid4())
        response = await self._request(
            "POST",
            token_endpoint,
            data=payload,
            headers={INTERACTION_ID_HEADER: interaction_id},
        )
        token_data = self._json(response)
        if not isinstance(token_data, dict) or "id_token" not in token_data:
            raise UpstreamUnavailable("Token response missing id_token")

        id_token = token_data["id_token"]
        header, claims = await self._verify_id_token(id_token, discovery)

        if claims.get("nonce") != nonce:
            raise SessionMismatch("Nonce in ID token does not match the authorisation request")

        interaction_id = response.headers.get(INTERACTION_ID_HEADER, interaction_id)
        logger.info(
            "Tokens retrieved",
            extra={"authorisation_server_id": bank_id, "x_fapi_interaction_id": interaction_id},
        )

        return TokenSet(
            claims=claims,
            id_token=id_token,
            access_token=token_data.get("access_token"),
            token_type=token_data.get("token_type"),
            id_token_header=header,
            interaction_id=interaction_id,
        )

    async def _verify_id_token(
        self,
        id_token: str,
        discovery: Dict[str, Any],
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        try:
            header = jwt.get_unverified_header(id_token)
        except InvalidTokenError as e:
            raise UpstreamUnavailable(f"Failed to decode ID token header: {e}")

        if header.get("alg") != self._id_token_alg:
            raise UpstreamUnavailable(
                "ID token signed with an unexpected algorithm",
                details={"alg": header.get("alg"), "expected": self._id_token_alg},
            )

        jwks_uri = discovery.get("jwks_uri")
        if not jwks_uri:
            raise UpstreamUnavailable("Discovery document missing jwks_uri")

        signing_key = self._find_key(await self._jwks(jwks_uri), header.get("kid"))
        if signing_key is None:
            # keys may have rotated
            signing_key = self._find_key(
                await self._jwks(jwks_uri, force_refresh=True), header.get("kid")
            )
            if signing_key is None:
                raise UpstreamUnavailable("Unable to find matching signing key in JWKS")

        try:
            claims = jwt.decode(
                id_token,
                jwt.PyJWK(signing_key, algorithm=self._id_token_alg).key,
                algorithms=[self._id_token_alg],
                audience=self.client_id,
                issuer=discovery.get("issuer"),
                leeway=10,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except (InvalidTokenError, PyJWKError) as e:
            raise UpstreamUnavailable(f"ID token verification failed: {e}")

        return header, claims

    @staticmethod
    def _find_key(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
        keys = [
            k for k in jwks.get("keys") or []
            if isinstance(k, dict) and k.get("use", "sig") == "sig"
        ]
        if kid is None:
            return keys[0] if len(keys) == 1 else None
        for key in keys:
            if key.get("kid") == kid:
                return key
        return None

    # -------------------------------------------------------------------------
    # Transport helpers
    # -------------------------------------------------------------------------

    def _client_authentication(self, audience: str) -> Dict[str, str]:
        if not self._signing_key:
            return {}

        now = int(time.time())
        assertion = jwt.encode(
            {
                "iss": self.client_id,
                "sub": self.client_id,
                "aud": audience,
                "iat": now,
                "exp": now + 300,
                "jti": str(uuid.uuid4()),
            },
            self._signing_key,
            algorithm=self._id_token_alg,
            headers={"kid": self._signing_kid} if self._signing_kid else None,
        )
        return {
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": assertion,
        }

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.TimeoutException:
            logger.error("Authorisation server request timed out", extra={"url": url})
            raise UpstreamUnavailable("Authorisation server request timed out")
        except httpx.HTTPError as e:
            logger.error(f"Authorisation server network error: {e}", extra={"url": url})
            raise UpstreamUnavailable(f"Unable to reach authorisation server: {e}")

        if not response.is_success:
            error_data: Dict[str, Any] = {}
            if response.headers.get("content-type", "").startswith("application/json"):
                try:
                    parsed = response.json()
                except ValueError:
                    parsed = None
                if isinstance(parsed, dict):
                    error_data = parsed
            message = error_data.get("error_description") or error_data.get("error") or "Request failed"
            logger.error(
                f"Authorisation server returned {response.status_code}: {message}",
                extra={"url": url, "x_fapi_interaction_id": response.headers.get(INTERACTION_ID_HEADER)},
            )
            raise UpstreamUnavailable(
                f"Authorisation server error: {message}",
                details={"x_fapi_interaction_id": response.headers.get(INTERACTION_ID_HEADER, "Unknown")},
                upstream_status=response.status_code,
            )

        return response

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            raise UpstreamUnavailable("Malformed JSON from authorisation server")


__all__ = [
    "AuthorizationClient",
    "AuthorizationRequest",
    "TokenSet",
    "ConnectIdClient",
    "generate_code_challenge",
    "build_claims_request",
]
