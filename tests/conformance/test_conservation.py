"""
Conservation Conformance Tests

INVARIANT: Transfers neither create nor destroy value.

    ∀ mint M, after any sequence of batches:
        Σ balances(M) = issued(M)

A loan moves the fee from borrower to pool; nothing else changes hands.
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from flashloan import (
    build_batch, borrow_call, repay_call, calculate_fee,
)

from tests.batch_helpers import (
    USDC, ALICE, POOL_LIQUIDITY, BORROWER_FLOAT, make_env,
)


class TestConservationProperties:
    """Property-based conservation tests."""

    @given(st.lists(st.integers(min_value=0, max_value=2 * POOL_LIQUIDITY), min_size=1, max_size=6))
    @settings(max_examples=25, deadline=None)
    def test_supply_constant_across_loans(self, principals):
        """
        PROPERTY: Any mix of applied and rejected loans keeps total supply fixed.
        """
        env = make_env()
        issued = env.ledger.total_supply(USDC)

        fees_paid = 0
        for nonce, principal in enumerate(principals):
            receipt = env.runtime.execute(build_batch([
                borrow_call(ALICE, USDC, principal),
                repay_call(ALICE, USDC),
            ], nonce=nonce))
            if receipt.ok:
                fees_paid += calculate_fee(principal)

            assert env.ledger.total_supply(USDC) == issued
            assert env.ledger.verify_conservation()['valid']

        assert env.pool_balance() == POOL_LIQUIDITY + fees_paid
        assert env.borrower_balance() == BORROWER_FLOAT - fees_paid


class TestConservationEdgeCases:
    """Edge cases for conservation."""

    def test_repeated_loans_drain_borrower_float(self, env):
        principal = 200_000_000  # fee 10_000_000
        applied = 0
        for nonce in range(7):
            receipt = env.runtime.execute(build_batch([
                borrow_call(ALICE, USDC, principal),
                repay_call(ALICE, USDC),
            ], nonce=nonce))
            applied += receipt.ok
        # 50 USDC float covers exactly five fees
        assert applied == 5
        assert env.borrower_balance() == 0
        assert env.pool_balance() == POOL_LIQUIDITY + BORROWER_FLOAT
