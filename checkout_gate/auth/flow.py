"""
Authorization flow controller.

Per CartId the flow moves NONE -> PENDING -> VERIFIED, or
NONE -> PENDING -> FAILED -> NONE when the bank exchange fails or the age
claim is not satisfied.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Sequence

from ..diagnostics import TokenSetLog, TokenSetRecord
from ..errors import CheckoutGateError, MissingAuthorizationCode, MissingSessionCookies
from .rp_client import AuthorizationClient, AuthorizationRequest, TokenSet
from .store import VerificationResult, VerificationSessionStore

logger = logging.getLogger(__name__)


FLOW_COOKIES = ("state", "nonce", "code_verifier", "authorisation_server_id")


def extract_age_claim(claims: Mapping[str, Any], claim_name: str) -> bool:
    """
    Return True only when ``claim_name`` is the boolean ``True``.

    The claim is read from the top level of the ID token, or from
    ``verified_claims.claims`` for providers that nest assured claims.
    """
    if claims.get(claim_name) is True:
        return True

    verified = claims.get("verified_claims")
    if isinstance(verified, dict):
        nested = verified.get("claims")
        if isinstance(nested, dict) and nested.get(claim_name) is True:
            return True

    return False


class AuthorizationFlowController:
    """
    Drives one age verification per cart through the relying-party client.

    Args:
        client: Relying-party client performing PAR and token exchange
        store: Owner of pending and verified records
        token_log: Receives each retrieved token set for diagnostics
        age_claim: Claim that must be exactly ``True``
        default_purpose: Purpose used when the caller supplies none
    """

    def __init__(
        self,
        client: AuthorizationClient,
        store: VerificationSessionStore,
        token_log: Optional[TokenSetLog] = None,
        age_claim: str = "over18",
        default_purpose: str = "Age verification required",
    ):
        self._client = client
        self._store = store
        self._token_log = token_log
        self._age_claim = age_claim
        self._default_purpose = default_purpose

    async def begin(
        self,
        cart_id: str,
        bank_id: str,
        essential_claims: Optional[Sequence[str]] = None,
        purpose: Optional[str] = None,
    ) -> AuthorizationRequest:
        claims = list(essential_claims or [self._age_claim])
        request = await self._client.start_authorization(
            bank_id,
            essential_claims=claims,
            voluntary_claims=[],
            purpose=purpose or self._default_purpose,
        )

        await self._store.begin_flow(
            cart_id,
            bank_id,
            state=request.state,
            nonce=request.nonce,
            code_verifier=request.code_verifier,
        )
        return request

    async def complete(
        self,
        cart_id: str,
        callback_params: Mapping[str, str],
        cookies: Mapping[str, Optional[str]],
    ) -> Dict[str, Any]:
        """
        Finish the flow for ``cart_id`` using the bank callback and flow cookies.

        Returns:
            Dict with the VerificationResult (``result``) and the TokenSet
            (``token_set``) that produced it

        Raises:
            MissingAuthorizationCode: No ``code`` in the callback
            MissingSessionCookies: Any of the flow cookies is absent
            SessionMismatch: The cookies do not match the pending flow
            AgeRequirementNotMet: The age claim was not exactly ``True``
            UpstreamUnavailable: The token exchange failed
        """
        if not callback_params.get("code"):
            raise MissingAuthorizationCode("Authorization code is missing.")

        missing = [name for name in FLOW_COOKIES if not cookies.get(name)]
        if missing:
            logger.warning(
                "Flow cookies missing on callback",
                extra={"cart_id": cart_id, "missing": missing},
            )
            raise MissingSessionCookies(
                "Missing session cookies. Please restart the verification.",
                details={"missing": missing},
            )

        state = cookies["state"]
        nonce = cookies["nonce"]
        code_verifier = cookies["code_verifier"]
        bank_id = cookies["authorisation_server_id"]

        await self._store.verify_pending(cart_id, bank_id, state, nonce, code_verifier)

        try:
            token_set = await self._client.complete_authorization(
                bank_id,
                callback_params,
                code_verifier=code_verifier,
                state=state,
                nonce=nonce,
            )
        except CheckoutGateError:
            await self._store.abandon_flow(cart_id, state)
            raise

        self._record(token_set, state, nonce)

        result: VerificationResult = await self._store.complete_flow(
            cart_id,
            state,
            nonce,
            code_verifier,
            age_verified=extract_age_claim(token_set.claims, self._age_claim),
        )
        return {"result": result, "token_set": token_set}

    async def status(self, cart_id: str) -> str:
        return await self._store.flow_status(cart_id)

    async def is_verified(self, cart_id: str) -> bool:
        return await self._store.is_verified(cart_id)

    def _record(self, token_set: TokenSet, state: str, nonce: str) -> None:
        if self._token_log is None:
            return
        self._token_log.record(
            TokenSetRecord(
                id_token=token_set.id_token,
                header=dict(token_set.id_token_header),
                claims=dict(token_set.claims),
                token_type=token_set.token_type,
                state=state,
                nonce=nonce,
                interaction_id=token_set.interaction_id,
            )
        )


__all__ = ["AuthorizationFlowController", "extract_age_claim", "FLOW_COOKIES"]
