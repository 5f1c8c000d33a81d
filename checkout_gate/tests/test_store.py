"""
Unit Tests for the Verification Session Store
=============================================

Test Coverage:
--------------
1. Pending flow lifecycle (begin, match, single use, replacement)
2. Verification expiry and lazy eviction
3. Session token checks bound to the cart
4. Purge and teardown
"""

from datetime import timedelta

import pytest

from checkout_gate.auth.session import SessionTokenIssuer
from checkout_gate.auth.store import FlowStatus, VerificationSessionStore
from checkout_gate.errors import AgeRequirementNotMet, InvalidSessionToken, SessionMismatch


SECRET = "store-test-secret-12345678901234567890"


@pytest.fixture
def store(clock):
    return VerificationSessionStore(
        SessionTokenIssuer(SECRET),
        verification_ttl=timedelta(hours=1),
        pending_ttl=timedelta(minutes=10),
        clock=clock,
    )


async def _begin(store, cart_id="cart1", bank_id="bank1"):
    return await store.begin_flow(cart_id, bank_id)


# ============================================================================
# Pending Flow Tests
# ============================================================================

class TestPendingFlow:

    @pytest.mark.asyncio
    async def test_begin_generates_distinct_secrets(self, store):
        pending = await _begin(store)

        assert pending.cart_id == "cart1"
        assert pending.authorisation_server_id == "bank1"
        assert len({pending.state, pending.nonce, pending.code_verifier}) == 3
        assert len(pending.state) >= 43
        assert await store.flow_status("cart1") == FlowStatus.PENDING

    @pytest.mark.asyncio
    async def test_begin_keeps_supplied_secrets(self, store):
        pending = await store.begin_flow("cart1", "bank1", state="s", nonce="n", code_verifier="v")
        assert (pending.state, pending.nonce, pending.code_verifier) == ("s", "n", "v")

    @pytest.mark.asyncio
    async def test_complete_creates_verification(self, store):
        pending = await _begin(store)

        result = await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )

        assert result.expires_at > result.verified_at
        assert result.expires_at - result.verified_at == timedelta(hours=1)
        assert await store.is_verified("cart1") is True
        assert await store.flow_status("cart1") == FlowStatus.VERIFIED

    @pytest.mark.asyncio
    async def test_second_begin_invalidates_first_flow(self, store):
        first = await _begin(store)
        second = await _begin(store)

        with pytest.raises(SessionMismatch):
            await store.complete_flow(
                "cart1", first.state, first.nonce, first.code_verifier, age_verified=True
            )

        result = await store.complete_flow(
            "cart1", second.state, second.nonce, second.code_verifier, age_verified=True
        )
        assert result.cart_id == "cart1"

    @pytest.mark.asyncio
    async def test_pending_record_is_single_use(self, store):
        pending = await _begin(store)
        await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )

        with pytest.raises(SessionMismatch):
            await store.complete_flow(
                "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
            )

    @pytest.mark.asyncio
    async def test_age_failure_consumes_pending_and_stores_nothing(self, store):
        pending = await _begin(store)

        with pytest.raises(AgeRequirementNotMet):
            await store.complete_flow(
                "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=False
            )

        assert await store.is_verified("cart1") is False
        assert await store.flow_status("cart1") == FlowStatus.NONE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["state", "nonce", "code_verifier"])
    async def test_any_mismatched_value_is_rejected(self, store, field):
        pending = await _begin(store)
        values = {"state": pending.state, "nonce": pending.nonce, "code_verifier": pending.code_verifier}
        values[field] = "tampered"

        with pytest.raises(SessionMismatch):
            await store.complete_flow("cart1", age_verified=True, **values)

        # a failed match does not consume the pending record
        assert await store.flow_status("cart1") == FlowStatus.PENDING

    @pytest.mark.asyncio
    async def test_flow_is_keyed_by_cart(self, store):
        pending = await _begin(store, cart_id="cart1")

        with pytest.raises(SessionMismatch):
            await store.complete_flow(
                "cart2", pending.state, pending.nonce, pending.code_verifier, age_verified=True
            )

    @pytest.mark.asyncio
    async def test_verify_pending_checks_bank(self, store):
        pending = await _begin(store)

        with pytest.raises(SessionMismatch):
            await store.verify_pending(
                "cart1", "bank2", pending.state, pending.nonce, pending.code_verifier
            )

        matched = await store.verify_pending(
            "cart1", "bank1", pending.state, pending.nonce, pending.code_verifier
        )
        assert matched == pending

    @pytest.mark.asyncio
    async def test_pending_expires(self, store, clock):
        pending = await _begin(store)
        clock.advance(minutes=11)

        with pytest.raises(SessionMismatch):
            await store.complete_flow(
                "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
            )
        assert await store.flow_status("cart1") == FlowStatus.NONE

    @pytest.mark.asyncio
    async def test_abandon_only_drops_matching_flow(self, store):
        first = await _begin(store)
        second = await _begin(store)

        assert await store.abandon_flow("cart1", first.state) is False
        assert await store.flow_status("cart1") == FlowStatus.PENDING

        assert await store.abandon_flow("cart1", second.state) is True
        assert await store.flow_status("cart1") == FlowStatus.NONE


# ============================================================================
# Verification Expiry Tests
# ============================================================================

class TestVerificationExpiry:

    @pytest.mark.asyncio
    async def test_verification_visible_until_expiry(self, store, clock):
        pending = await _begin(store)
        await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )

        clock.advance(minutes=59)
        assert await store.is_verified("cart1") is True

        clock.advance(minutes=2)
        assert await store.is_verified("cart1") is False
        assert await store.get_verification("cart1") is None

    @pytest.mark.asyncio
    async def test_clear_removes_everything(self, store):
        pending = await _begin(store)
        await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )
        await _begin(store)

        await store.clear("cart1")

        assert await store.flow_status("cart1") == FlowStatus.NONE

    @pytest.mark.asyncio
    async def test_purge_expired_counts_removed_records(self, store, clock):
        pending = await _begin(store, cart_id="cart1")
        await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )
        await _begin(store, cart_id="cart2")

        assert await store.purge_expired() == 0

        clock.advance(hours=2)
        assert await store.purge_expired() == 2

    @pytest.mark.asyncio
    async def test_init_and_teardown_manage_sweeper(self, clock):
        store = VerificationSessionStore(SessionTokenIssuer(SECRET), clock=clock, sweep_interval=3600)

        await store.init()
        assert store._sweeper is not None

        await _begin(store)
        await store.teardown()

        assert store._sweeper is None
        assert await store.flow_status("cart1") == FlowStatus.NONE


# ============================================================================
# Session Token Tests
# ============================================================================

class TestSessionTokenCheck:

    @pytest.mark.asyncio
    async def test_issued_token_is_accepted(self, store):
        pending = await _begin(store)
        result = await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )

        checked = await store.check_session_token("cart1", result.session_token)
        assert checked == result

    @pytest.mark.asyncio
    async def test_token_for_another_cart_is_rejected(self, store):
        results = {}
        for cart_id in ("cart1", "cart2"):
            pending = await _begin(store, cart_id=cart_id)
            results[cart_id] = await store.complete_flow(
                cart_id, pending.state, pending.nonce, pending.code_verifier, age_verified=True
            )

        with pytest.raises(InvalidSessionToken):
            await store.check_session_token("cart2", results["cart1"].session_token)

    @pytest.mark.asyncio
    async def test_superseded_token_is_rejected(self, store):
        tokens = []
        for _ in range(2):
            pending = await _begin(store)
            result = await store.complete_flow(
                "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
            )
            tokens.append(result.session_token)

        with pytest.raises(InvalidSessionToken):
            await store.check_session_token("cart1", tokens[0])

    @pytest.mark.asyncio
    async def test_token_rejected_after_expiry(self, store, clock):
        pending = await _begin(store)
        result = await store.complete_flow(
            "cart1", pending.state, pending.nonce, pending.code_verifier, age_verified=True
        )
        clock.advance(hours=2)

        with pytest.raises(InvalidSessionToken):
            await store.check_session_token("cart1", result.session_token)
