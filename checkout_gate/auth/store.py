"""
Verification Session Store
==========================

Holds the per-cart ephemeral state of the age verification flow:

- PendingAuthorization: the state/nonce/PKCE verifier/bank of an in-flight
  authorisation, written when a shopper picks a bank and consumed exactly
  once by the callback.
- VerificationResult: the outcome of a successful flow, valid until its
  expiry.

All records are keyed strictly by CartId. The store is the only component
that mutates them; every mutation happens under one asyncio lock so each
record replace/delete is atomic.

A multi-instance deployment needs this state in a shared external store
with the same whole-record replace semantics.
"""

import asyncio
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

from ..errors import AgeRequirementNotMet, InvalidSessionToken, SessionMismatch
from .session import SessionTokenIssuer

logger = logging.getLogger(__name__)


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_secret() -> str:
    """256 bits of URL-safe randomness for state, nonce and PKCE verifiers."""
    return secrets.token_urlsafe(32)


def _same(presented: Optional[str], stored: str) -> bool:
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), stored.encode("utf-8"))


# =============================================================================
# Records
# =============================================================================

@dataclass(frozen=True)
class PendingAuthorization:
    cart_id: str
    authorisation_server_id: str
    state: str
    nonce: str
    code_verifier: str
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class VerificationResult:
    cart_id: str
    verified_at: datetime
    expires_at: datetime
    session_token: str


class FlowStatus:
    NONE = "NONE"
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"


# =============================================================================
# Store
# =============================================================================

class VerificationSessionStore:
    """
    In-memory, per-process store for flow and verification records.

    Args:
        token_issuer: Signs the session token handed out on success
        verification_ttl: Lifetime of a VerificationResult
        pending_ttl: Lifetime of a PendingAuthorization
        clock: Returns the current aware UTC datetime (injectable for tests)
        sweep_interval: Seconds between background purges; 0 disables the sweeper
    """

    def __init__(
        self,
        token_issuer: SessionTokenIssuer,
        verification_ttl: timedelta = timedelta(hours=1),
        pending_ttl: timedelta = timedelta(minutes=10),
        clock: Optional[Clock] = None,
        sweep_interval: float = 0,
    ):
        if verification_ttl <= timedelta(0):
            raise ValueError("verification_ttl must be positive")
        self._issuer = token_issuer
        self._verification_ttl = verification_ttl
        self._pending_ttl = pending_ttl
        self._clock = clock or utc_now
        self._sweep_interval = sweep_interval

        self._pending: Dict[str, PendingAuthorization] = {}
        self._verified: Dict[str, VerificationResult] = {}
        self._lock = asyncio.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def init(self) -> None:
        """Start the background sweeper, if configured."""
        if self._sweep_interval and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.info(
                "Verification session sweeper started",
                extra={"interval_seconds": self._sweep_interval},
            )

    async def teardown(self) -> None:
        """Stop the sweeper and drop every record."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None

        async with self._lock:
            self._pending.clear()
            self._verified.clear()

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.purge_expired()
            except Exception as e:
                logger.error(f"Verification session sweep failed: {e}", exc_info=True)

    # -------------------------------------------------------------------------
    # Flow records
    # -------------------------------------------------------------------------

    async def begin_flow(
        self,
        cart_id: str,
        bank_id: str,
        state: Optional[str] = None,
        nonce: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> PendingAuthorization:
        """
        Record a new in-flight authorisation for ``cart_id``.

        Any secret not supplied by the relying-party client is generated here.
        A previous pending record for the same cart is replaced, which makes
        its state and nonce unusable.
        """
        now = self._clock()
        pending = PendingAuthorization(
            cart_id=cart_id,
            authorisation_server_id=bank_id,
            state=state or generate_secret(),
            nonce=nonce or generate_secret(),
            code_verifier=code_verifier or generate_secret(),
            created_at=now,
            expires_at=now + self._pending_ttl,
        )

        async with self._lock:
            replaced = cart_id in self._pending
            self._pending[cart_id] = pending

        logger.info(
            "Authorisation flow started",
            extra={"cart_id": cart_id, "bank_id": bank_id, "replaced_pending": replaced},
        )
        return pending

    async def verify_pending(
        self,
        cart_id: str,
        bank_id: Optional[str],
        state: Optional[str],
        nonce: Optional[str],
        code_verifier: Optional[str],
    ) -> PendingAuthorization:
        """
        Check presented flow values against the pending record without consuming it.

        Raises:
            SessionMismatch: If there is no unexpired pending record for the
                cart or any presented value differs from the stored one
        """
        async with self._lock:
            return self._match_locked(cart_id, bank_id, state, nonce, code_verifier)

    async def complete_flow(
        self,
        cart_id: str,
        state: Optional[str],
        nonce: Optional[str],
        code_verifier: Optional[str],
        age_verified: bool,
    ) -> VerificationResult:
        """
        Consume the pending record and, if the age claim held, store a result.

        The pending record is deleted on a successful match whatever the age
        outcome, so a replayed callback observes SessionMismatch.

        Raises:
            SessionMismatch: No matching pending record
            AgeRequirementNotMet: The flow completed but the claim was not satisfied
        """
        async with self._lock:
            pending = self._match_locked(cart_id, None, state, nonce, code_verifier)
            del self._pending[cart_id]

            if not age_verified:
                self._verified.pop(cart_id, None)
                logger.info(
                    "Age requirement not met",
                    extra={"cart_id": cart_id, "bank_id": pending.authorisation_server_id},
                )
                raise AgeRequirementNotMet("User verification failed. Age requirement not met.")

            verified_at = self._clock()
            expires_at = verified_at + self._verification_ttl
            result = VerificationResult(
                cart_id=cart_id,
                verified_at=verified_at,
                expires_at=expires_at,
                session_token=self._issuer.issue(cart_id, verified_at, expires_at),
            )
            self._verified[cart_id] = result

        logger.info(
            "Age verification recorded",
            extra={
                "cart_id": cart_id,
                "bank_id": pending.authorisation_server_id,
                "expires_at": expires_at.isoformat(),
            },
        )
        return result

    async def abandon_flow(self, cart_id: str, state: str) -> bool:
        """Drop the pending record only if it still belongs to the flow with ``state``."""
        async with self._lock:
            pending = self._pending.get(cart_id)
            if pending is None or not _same(state, pending.state):
                return False
            del self._pending[cart_id]

        logger.info("Authorisation flow abandoned", extra={"cart_id": cart_id})
        return True

    def _match_locked(
        self,
        cart_id: str,
        bank_id: Optional[str],
        state: Optional[str],
        nonce: Optional[str],
        code_verifier: Optional[str],
    ) -> PendingAuthorization:
        pending = self._pending.get(cart_id)
        if pending is None:
            logger.warning("No pending authorisation for cart", extra={"cart_id": cart_id})
            raise SessionMismatch("No authorisation flow is in progress for this cart")

        if self._clock() >= pending.expires_at:
            del self._pending[cart_id]
            logger.warning("Pending authorisation expired", extra={"cart_id": cart_id})
            raise SessionMismatch("The authorisation flow for this cart has expired")

        checks = [
            _same(state, pending.state),
            _same(nonce, pending.nonce),
            _same(code_verifier, pending.code_verifier),
        ]
        if bank_id is not None:
            checks.append(_same(bank_id, pending.authorisation_server_id))

        if not all(checks):
            logger.warning(
                "Presented flow values do not match the pending authorisation",
                extra={"cart_id": cart_id},
            )
            raise SessionMismatch("Session does not match the authorisation flow for this cart")

        return pending

    # -------------------------------------------------------------------------
    # Verification records
    # -------------------------------------------------------------------------

    async def get_verification(self, cart_id: str) -> Optional[VerificationResult]:
        """Return the unexpired result for ``cart_id``, evicting it if it has lapsed."""
        async with self._lock:
            result = self._verified.get(cart_id)
            if result is None:
                return None
            if self._clock() >= result.expires_at:
                del self._verified[cart_id]
                logger.info("Age verification expired", extra={"cart_id": cart_id})
                return None
            return result

    async def is_verified(self, cart_id: str) -> bool:
        return await self.get_verification(cart_id) is not None

    async def flow_status(self, cart_id: str) -> str:
        if await self.is_verified(cart_id):
            return FlowStatus.VERIFIED

        async with self._lock:
            pending = self._pending.get(cart_id)
            if pending is not None and self._clock() < pending.expires_at:
                return FlowStatus.PENDING
        return FlowStatus.NONE

    async def check_session_token(self, cart_id: str, token: str) -> VerificationResult:
        """
        Validate a session token re-presented by the browser.

        Raises:
            InvalidSessionToken: No live verification for the cart, or the
                token is not the one issued for it
        """
        result = await self.get_verification(cart_id)
        if result is None:
            raise InvalidSessionToken("Invalid or expired token")

        self._issuer.verify(token, cart_id)
        if not _same(token, result.session_token):
            logger.warning("Superseded session token presented", extra={"cart_id": cart_id})
            raise InvalidSessionToken("Invalid or expired token")

        return result

    # -------------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------------

    async def clear(self, cart_id: str) -> None:
        """Remove both the pending and the verification record for ``cart_id``."""
        async with self._lock:
            self._pending.pop(cart_id, None)
            self._verified.pop(cart_id, None)
        logger.info("Verification session cleared", extra={"cart_id": cart_id})

    async def purge_expired(self) -> int:
        """Remove every expired record. Returns how many were removed."""
        async with self._lock:
            now = self._clock()
            expired_pending = [k for k, v in self._pending.items() if now >= v.expires_at]
            expired_verified = [k for k, v in self._verified.items() if now >= v.expires_at]

            for key in expired_pending:
                del self._pending[key]
            for key in expired_verified:
                del self._verified[key]

        removed = len(expired_pending) + len(expired_verified)
        if removed:
            logger.debug(f"Purged {removed} expired verification session records")
        return removed


__all__ = [
    "VerificationSessionStore",
    "PendingAuthorization",
    "VerificationResult",
    "FlowStatus",
    "generate_secret",
    "utc_now",
]
