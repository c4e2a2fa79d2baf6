"""
conftest.py - Shared pytest fixtures for flash-loan tests

Provides common fixtures used across unit, conformance and scenario tests:
- Empty and funded token ledgers
- A runtime with the flash-loan program registered and a funded pool
- Batch introspectors over small synthetic batches
"""

import pytest

from flashloan import (
    TokenLedger, Mint, Runtime, BatchIntrospector,
    FLASH_LOAN_PROGRAM_ID,
    borrow_call, repay_call,
)

from tests.batch_helpers import (
    USDC, ALICE, BOB, make_env, memo_call,
)


# =============================================================================
# LEDGER FIXTURES
# =============================================================================

@pytest.fixture
def ledger():
    """Test-mode ledger with USDC registered and no accounts."""
    ledger = TokenLedger("test", verbose=False, test_mode=True)
    ledger.register_mint(Mint(USDC, "USDC", decimals=6))
    return ledger


@pytest.fixture
def funded_ledger(ledger):
    """Ledger where ALICE holds 1_000 USDC and BOB holds an empty account."""
    alice = ledger.create_associated_account(ALICE, USDC)
    ledger.create_associated_account(BOB, USDC)
    ledger.mint_to(USDC, alice, 1_000_000_000)
    return ledger


@pytest.fixture
def runtime(funded_ledger):
    """Runtime over the funded ledger with only built-in programs."""
    return Runtime(funded_ledger, verbose=False)


# =============================================================================
# FLASH-LOAN FIXTURES
# =============================================================================

@pytest.fixture
def env():
    """Runtime with the flash-loan program, a funded pool and a funded borrower."""
    return make_env()


@pytest.fixture
def unfunded_env():
    """Same as env, but the borrower has no holding account yet."""
    return make_env(borrower_float=0)


# =============================================================================
# INTROSPECTION FIXTURES
# =============================================================================

@pytest.fixture
def loan_calls():
    """[borrow(100 USDC), memo, repay] for ALICE."""
    return [
        borrow_call(ALICE, USDC, 100_000_000),
        memo_call(),
        repay_call(ALICE, USDC),
    ]


@pytest.fixture
def loan_view(loan_calls):
    """Introspector over loan_calls as seen from the borrow call."""
    return BatchIntrospector.from_calls(loan_calls, current_index=0)


@pytest.fixture
def program_id():
    return FLASH_LOAN_PROGRAM_ID
