"""
Verification flow routes.

The storefront calls ``/select-bank`` when the shopper picks an identity
provider, redirects the browser to the returned URL, and calls
``/retrieve-tokens`` with the authorisation code once the bank redirects
back. The flow secrets travel in short-lived cookies between the two calls
and are cleared on every callback outcome.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse

from ..config import Settings
from ..dependencies import get_app_settings, get_flow, get_rp_client, get_store, get_token_log
from ..diagnostics import TokenSetLog, run_compliance_checks
from ..errors import CheckoutGateError, SessionMismatch, ValidationError
from ..models import (
    CART_ID_PATTERN,
    CartRequest,
    IdTokenPayload,
    LogsResponse,
    MessageResponse,
    RetrieveTokensResponse,
    SelectBankRequest,
    SelectBankResponse,
    TokenCheckRequest,
    VerificationStatusResponse,
)
from .flow import FLOW_COOKIES, AuthorizationFlowController
from .rp_client import AuthorizationClient
from .store import VerificationSessionStore

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(tags=["verification"])


CART_COOKIE = "cart_id"
ALL_COOKIES = FLOW_COOKIES + (CART_COOKIE,)

ACCESS_GRANTED = "Access granted to restricted resource"


# =============================================================================
# Cookie Helpers
# =============================================================================

def set_flow_cookie(response: Response, key: str, value: str, max_age: int) -> None:
    # SameSite=None so the cookies survive the cross-site redirect back from the bank
    response.set_cookie(
        key,
        value,
        max_age=max_age,
        path="/",
        secure=True,
        httponly=True,
        samesite="none",
    )


def clear_flow_cookies(response: Response) -> None:
    for key in ALL_COOKIES:
        response.delete_cookie(key, path="/", secure=True, httponly=True, samesite="none")


def resolve_cart_id(query_cart_id: Optional[str], cookie_cart_id: Optional[str]) -> str:
    """
    Pick the CartId for a callback from the query string or the flow cookie.

    Raises:
        SessionMismatch: Both are present and disagree
        ValidationError: Neither is present
    """
    if query_cart_id and cookie_cart_id and query_cart_id != cookie_cart_id:
        raise SessionMismatch("Cart ID does not match the authorisation flow")

    cart_id = query_cart_id or cookie_cart_id
    if not cart_id:
        raise ValidationError("Cart ID is required")
    return cart_id


def _error_response(exc: CheckoutGateError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# =============================================================================
# Flow Endpoints
# =============================================================================

@auth_router.post("/select-bank", response_model=SelectBankResponse)
async def select_bank(
    body: SelectBankRequest,
    response: Response,
    flow: AuthorizationFlowController = Depends(get_flow),
    settings: Settings = Depends(get_app_settings),
) -> SelectBankResponse:
    """
    Start an age verification for a cart with the chosen bank.

    Sends the pushed authorisation request, records the pending flow and
    sets the flow cookies the callback will present.
    """
    request = await flow.begin(
        body.cart_id,
        body.authorisation_server_id,
        purpose=body.purpose,
    )

    max_age = settings.FLOW_COOKIE_MAX_AGE_SECONDS
    set_flow_cookie(response, "state", request.state, max_age)
    set_flow_cookie(response, "nonce", request.nonce, max_age)
    set_flow_cookie(response, "code_verifier", request.code_verifier, max_age)
    set_flow_cookie(response, "authorisation_server_id", body.authorisation_server_id, max_age)
    set_flow_cookie(response, CART_COOKIE, body.cart_id, max_age)

    return SelectBankResponse(auth_url=request.auth_url)


@auth_router.get("/retrieve-tokens", response_model=RetrieveTokensResponse)
async def retrieve_tokens(
    request: Request,
    cart_id: Optional[str] = Query(
        None, alias="cartId", pattern=CART_ID_PATTERN, description="Cart being verified"
    ),
    flow: AuthorizationFlowController = Depends(get_flow),
):
    """
    Complete the verification with the authorisation code from the bank.

    Query Parameters:
        code: Authorization code returned by the bank
        state, iss: Echoed by the bank and checked against the flow
        cartId: Cart being verified (falls back to the cart_id cookie)

    Returns:
        The released claims, the session token and the ID token. The flow
        cookies are cleared whether or not the verification succeeds.
    """
    cookies = {name: request.cookies.get(name) for name in FLOW_COOKIES}

    try:
        resolved_cart_id = resolve_cart_id(cart_id, request.cookies.get(CART_COOKIE))
        outcome = await flow.complete(resolved_cart_id, dict(request.query_params), cookies)
    except CheckoutGateError as e:
        response = _error_response(e)
        clear_flow_cookies(response)
        return response
    except Exception as e:
        logger.error(f"Unexpected error completing verification: {e}", exc_info=True)
        response = JSONResponse(
            status_code=500,
            content={"error": "internal_server_error", "message": "An unexpected error occurred"},
        )
        clear_flow_cookies(response)
        return response

    result = outcome["result"]
    token_set = outcome["token_set"]

    payload = RetrieveTokensResponse(
        claims=token_set.claims,
        token=result.session_token,
        id_token=IdTokenPayload(decoded=token_set.claims, raw=token_set.id_token),
        expires_at=result.expires_at,
        x_fapi_interaction_id=token_set.interaction_id or "Unknown",
    )
    response = JSONResponse(content=payload.model_dump(mode="json", by_alias=True))
    clear_flow_cookies(response)
    return response


@auth_router.get("/verification-status", response_model=VerificationStatusResponse)
async def verification_status(
    cart_id: str = Query(..., alias="cartId", min_length=1, pattern=CART_ID_PATTERN),
    store: VerificationSessionStore = Depends(get_store),
) -> VerificationStatusResponse:
    status = await store.flow_status(cart_id)
    verification = await store.get_verification(cart_id)
    return VerificationStatusResponse(
        cart_id=cart_id,
        status=status,
        expires_at=verification.expires_at if verification else None,
    )


@auth_router.post("/reset", response_model=MessageResponse)
async def reset(
    body: CartRequest,
    response: Response,
    store: VerificationSessionStore = Depends(get_store),
) -> MessageResponse:
    """Forget any pending or completed verification for the cart."""
    await store.clear(body.cart_id)
    clear_flow_cookies(response)
    return MessageResponse(message="Verification state cleared.")


# =============================================================================
# Session Token Endpoints
# =============================================================================

@auth_router.post("/token-expiry", response_model=MessageResponse)
async def token_expiry(
    body: TokenCheckRequest,
    store: VerificationSessionStore = Depends(get_store),
) -> MessageResponse:
    await store.check_session_token(body.cart_id, body.token)
    return MessageResponse(message=ACCESS_GRANTED)


@auth_router.get("/token-expiry", response_model=MessageResponse)
async def token_expiry_query(
    cart_id: str = Query(..., alias="cartId", min_length=1, pattern=CART_ID_PATTERN),
    token: str = Query(..., min_length=1),
    store: VerificationSessionStore = Depends(get_store),
) -> MessageResponse:
    await store.check_session_token(cart_id, token)
    return MessageResponse(message=ACCESS_GRANTED)


# =============================================================================
# Directory
# =============================================================================

@auth_router.get("/participants", response_model=List[Dict[str, Any]])
async def participants(
    rp_client: AuthorizationClient = Depends(get_rp_client),
) -> List[Dict[str, Any]]:
    """List the identity providers the shopper can choose from."""
    return await rp_client.get_participants()


# =============================================================================
# Diagnostics
# =============================================================================

@auth_router.get("/logs", response_model=LogsResponse)
async def logs(
    state: Optional[str] = Query(None, description="State echoed by the authorisation response"),
    token_log: TokenSetLog = Depends(get_token_log),
    settings: Settings = Depends(get_app_settings),
) -> LogsResponse:
    """Run the compliance checks against the last retrieved token set."""
    record = token_log.latest()
    if record is None:
        raise ValidationError(
            "No token data found. Please retrieve tokens first by hitting /retrieve-tokens."
        )

    entries = run_compliance_checks(
        record,
        expected_client_id=settings.CLIENT_ID,
        expected_alg=settings.ID_TOKEN_SIGNING_ALG,
        expected_issuer=settings.EXPECTED_ISSUER,
        query_state=state,
    )
    return LogsResponse(logs=entries)
