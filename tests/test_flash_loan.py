"""
test_flash_loan.py - End-to-end flash-loan scenarios

Each test submits a real batch to a Runtime with the flash-loan program
registered and checks the receipt and the resulting balances.

Tests:
- Successful borrow/repay, with and without intermediate calls
- Principal validation
- Missing or mismatched repay / borrow
- Counterparty binding
- Nested invocation through another program
- Account schema violations
- Rollback when an unrelated call fails
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from flashloan import (
    Pubkey, AccountMeta, Call, ExecuteResult,
    ProgramConfig, FlashLoanProgram,
    InvalidAmount, InvalidInstruction, InvalidProgram, ProgramMismatch,
    InvalidBorrowerAccount, InvalidPoolAccount,
    MissingRepayInstruction, MissingBorrowInstruction,
    InsufficientFunds, AccountConstraintViolation, MissingRequiredSignature, InvalidSeeds,
    BORROWER_ACCOUNT_POS, POOL_ACCOUNT_POS, BORROW_TAG,
    build_batch, borrow_call, repay_call, calculate_fee, quote_loan,
    get_associated_token_address,
)

from tests.batch_helpers import (
    USDC, ALICE, BOB, POOL_LIQUIDITY, BORROWER_FLOAT, PROXY_PROGRAM_ID,
    ProxyProgram, make_env, with_account, truncated_accounts, pay_call, memo_call,
)


def _loan(env, principal, *middle):
    return build_batch([
        borrow_call(env.borrower, env.mint, principal),
        *middle,
        repay_call(env.borrower, env.mint),
    ])


# =============================================================================
# SUCCESSFUL LOANS
# =============================================================================

class TestSuccessfulLoan:
    """Borrow and repay in one batch."""

    def test_pool_earns_fee(self, env):
        receipt = env.runtime.execute(_loan(env, 100_000_000))
        assert receipt.ok, receipt
        assert env.pool_balance() == POOL_LIQUIDITY + 5_000_000
        assert env.borrower_balance() == BORROWER_FLOAT - 5_000_000

    def test_logs(self, env):
        receipt = env.runtime.execute(_loan(env, 100_000_000))
        assert "Program log: Borrow: 100000000" in receipt.logs
        assert "Program log: Repay: 105000000 (principal 100000000, fee 5000000)" in receipt.logs

    def test_funds_usable_between_legs(self, env):
        env.ledger.create_associated_account(BOB, USDC)
        batch = _loan(env, 100_000_000, pay_call(ALICE, BOB, 40_000_000), pay_call(BOB, ALICE, 40_000_000))
        receipt = env.runtime.execute(batch)
        assert receipt.ok, receipt
        assert env.ledger.get_balance(get_associated_token_address(BOB, USDC)) == 0
        assert env.pool_balance() == POOL_LIQUIDITY + 5_000_000

    def test_borrow_entire_pool(self, env):
        receipt = env.runtime.execute(_loan(env, POOL_LIQUIDITY))
        assert receipt.ok, receipt
        assert env.pool_balance() == POOL_LIQUIDITY + calculate_fee(POOL_LIQUIDITY)
        assert env.borrower_balance() == 0

    def test_tiny_loan_is_free(self, env):
        receipt = env.runtime.execute(_loan(env, 19))
        assert receipt.ok
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_custom_fee_rate(self):
        env = make_env(config=ProgramConfig(fee_bps=200))
        config = env.program.config
        batch = build_batch([
            borrow_call(ALICE, USDC, 100_000_000, config),
            repay_call(ALICE, USDC, config),
        ])
        assert env.runtime.execute(batch).ok
        assert env.pool_balance() == POOL_LIQUIDITY + 2_000_000

    def test_supply_conserved(self, env):
        before = env.ledger.total_supply(USDC)
        env.runtime.execute(_loan(env, 100_000_000))
        assert env.ledger.total_supply(USDC) == before
        assert env.ledger.verify_conservation()['valid']

    @given(st.integers(min_value=1, max_value=POOL_LIQUIDITY))
    @settings(max_examples=25, deadline=None)
    def test_any_principal(self, principal):
        """
        PROPERTY: the pool gains exactly the fee and the borrower pays exactly the fee.
        """
        env = make_env()
        quote = quote_loan(principal)
        receipt = env.runtime.execute(_loan(env, principal))
        assert receipt.ok
        assert env.pool_balance() == POOL_LIQUIDITY + quote.fee
        assert env.borrower_balance() == BORROWER_FLOAT - quote.fee


# =============================================================================
# PRINCIPAL AND FUNDS
# =============================================================================

class TestPrincipal:
    """Principal and balance failures."""

    def test_zero_principal(self, env):
        log_length = len(env.ledger.transfer_log)
        receipt = env.runtime.execute(_loan(env, 0))
        assert isinstance(receipt.error, InvalidAmount)
        assert receipt.failed_call == 0
        assert len(env.ledger.transfer_log) == log_length
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_zero_principal_checked_before_accounts(self, env):
        call = truncated_accounts(borrow_call(ALICE, USDC, 0), 8)
        receipt = env.runtime.execute(build_batch([call, repay_call(ALICE, USDC)], signers=[ALICE]))
        assert isinstance(receipt.error, InvalidAmount)
        assert receipt.failed_call == 0

    def test_principal_exceeds_pool(self, env):
        receipt = env.runtime.execute(_loan(env, POOL_LIQUIDITY + 1))
        assert isinstance(receipt.error, InsufficientFunds)
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_borrower_cannot_cover_fee(self, unfunded_env):
        env = unfunded_env
        receipt = env.runtime.execute(_loan(env, 100_000_000))
        assert isinstance(receipt.error, InsufficientFunds)
        assert receipt.failed_call == 1
        assert env.pool_balance() == POOL_LIQUIDITY
        # the holding account created during the batch is rolled back too
        assert not env.ledger.has_account(env.borrower_account)

    def test_holding_account_provisioned(self, unfunded_env):
        env = unfunded_env
        batch = _loan(env, 100_000, pay_call(BOB, ALICE, 5_000))
        env.ledger.create_associated_account(BOB, USDC)
        env.ledger.set_balance(get_associated_token_address(BOB, USDC), 5_000)
        receipt = env.runtime.execute(batch)
        assert receipt.ok, receipt
        assert env.ledger.has_account(env.borrower_account)
        assert env.pool_balance() == POOL_LIQUIDITY + 5_000
        assert env.borrower_balance() == 0


# =============================================================================
# BATCH LINKAGE
# =============================================================================

class TestBatchLinkage:
    """Borrow must be closed by a matching repay at the end of the batch."""

    def test_borrow_without_repay(self, env):
        receipt = env.runtime.execute(build_batch([borrow_call(ALICE, USDC, 100_000_000)]))
        assert isinstance(receipt.error, MissingRepayInstruction)
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_batch_ending_with_other_program(self, env):
        batch = build_batch([borrow_call(ALICE, USDC, 100_000_000), memo_call()])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidProgram)
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_batch_ending_with_second_borrow(self, env):
        batch = build_batch([
            borrow_call(ALICE, USDC, 100_000_000),
            borrow_call(ALICE, USDC, 1),
        ])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidInstruction)
        assert receipt.failed_call == 0

    def test_second_borrow_before_repay(self, env):
        # Repay charges call 0's principal, so a later borrow would go unpaid.
        batch = build_batch([
            borrow_call(ALICE, USDC, 1),
            borrow_call(ALICE, USDC, 500_000_000),
            repay_call(ALICE, USDC),
        ])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidInstruction)
        assert receipt.failed_call == 1
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_borrow_after_unrelated_call(self, env):
        batch = build_batch([memo_call(), borrow_call(ALICE, USDC, 100_000_000), repay_call(ALICE, USDC)])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidInstruction)
        assert receipt.failed_call == 1
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_repay_only(self, env):
        receipt = env.runtime.execute(build_batch([repay_call(ALICE, USDC)]))
        assert isinstance(receipt.error, MissingBorrowInstruction)
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_repay_after_unrelated_call(self, env):
        receipt = env.runtime.execute(build_batch([memo_call(), repay_call(ALICE, USDC)]))
        assert isinstance(receipt.error, InvalidProgram)

    def test_repay_reads_principal_from_borrow(self, env):
        # Two repays: the first is not the tail, but still charges call 0's principal.
        batch = _loan(env, 100_000_000, repay_call(ALICE, USDC))
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InsufficientFunds)
        assert receipt.failed_call == 2

    def test_other_borrower_account_in_repay(self, env):
        env.ledger.create_associated_account(BOB, USDC)
        tail = with_account(repay_call(ALICE, USDC), BORROWER_ACCOUNT_POS,
                            get_associated_token_address(BOB, USDC))
        batch = build_batch([borrow_call(ALICE, USDC, 100_000_000), tail])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidBorrowerAccount)
        assert receipt.failed_call == 0
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_other_pool_account_in_repay(self, env):
        tail = with_account(repay_call(ALICE, USDC), POOL_ACCOUNT_POS, Pubkey.from_label("elsewhere"))
        batch = build_batch([borrow_call(ALICE, USDC, 100_000_000), tail])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidPoolAccount)
        assert env.pool_balance() == POOL_LIQUIDITY

    def test_other_borrower_repays(self, env):
        env.ledger.create_associated_account(BOB, USDC)
        env.ledger.set_balance(get_associated_token_address(BOB, USDC), 200_000_000)
        batch = build_batch([borrow_call(ALICE, USDC, 100_000_000), repay_call(BOB, USDC)])
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InvalidBorrowerAccount)

    def test_unknown_tag(self, env):
        call = borrow_call(ALICE, USDC, 1)
        bogus = Call(call.program_id, call.accounts, b"\x00" * 16)
        receipt = env.runtime.execute(build_batch([bogus]))
        assert isinstance(receipt.error, InvalidInstruction)

    def test_truncated_borrow_payload(self, env):
        call = borrow_call(ALICE, USDC, 1)
        short = Call(call.program_id, call.accounts, BORROW_TAG + b"\x01")
        receipt = env.runtime.execute(build_batch([short, repay_call(ALICE, USDC)]))
        assert isinstance(receipt.error, InvalidInstruction)
        assert receipt.failed_call == 0


# =============================================================================
# NESTED INVOCATION
# =============================================================================

class TestIndirectInvocation:
    """Borrow refuses to run when reached through another program."""

    def test_borrow_through_proxy(self, env):
        env.runtime.register_program(ProxyProgram(borrow_call(ALICE, USDC, 100_000_000)))
        outer = Call(PROXY_PROGRAM_ID, (AccountMeta.writable(ALICE, signer=True),))
        receipt = env.runtime.execute(build_batch([outer, repay_call(ALICE, USDC)]))
        assert isinstance(receipt.error, ProgramMismatch)
        assert receipt.failed_call == 0
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_pool_seeds_only_sign_for_owning_program(self, env):
        pool_seeds = env.program.pool_seeds

        class SeedThief:
            program_id = Pubkey.from_label("seed_thief")

            def process(self, ctx):
                ctx.invoke(pay_call(env.program.pool, ALICE, 1), signer_seeds=(pool_seeds,))

        env.runtime.register_program(SeedThief())
        receipt = env.runtime.execute(build_batch([Call(SeedThief.program_id)]))
        assert isinstance(receipt.error, (MissingRequiredSignature, InvalidSeeds))
        assert env.pool_balance() == POOL_LIQUIDITY


# =============================================================================
# ACCOUNT SCHEMA
# =============================================================================

class TestAccountSchema:
    """Borrow and repay validate their own account lists."""

    def _rejected(self, env, call):
        receipt = env.runtime.execute(build_batch([call, repay_call(ALICE, USDC)], signers=[ALICE]))
        assert isinstance(receipt.error, AccountConstraintViolation), receipt
        assert env.pool_balance() == POOL_LIQUIDITY
        return receipt

    def test_too_few_accounts(self, env):
        self._rejected(env, truncated_accounts(borrow_call(ALICE, USDC, 1), 8))

    def test_borrower_not_signer(self, env):
        call = borrow_call(ALICE, USDC, 1)
        accounts = (AccountMeta.writable(ALICE),) + call.accounts[1:]
        self._rejected(env, Call(call.program_id, accounts, call.data))

    def test_wrong_pool(self, env):
        self._rejected(env, with_account(borrow_call(ALICE, USDC, 1), 1, Pubkey.from_label("fake_pool")))

    def test_unknown_mint(self, env):
        self._rejected(env, with_account(borrow_call(ALICE, USDC, 1), 2, Pubkey.from_label("fake_mint")))

    @pytest.mark.parametrize("position", [5, 6, 7, 8])
    def test_wrong_fixed_address(self, env, position):
        self._rejected(env, with_account(borrow_call(ALICE, USDC, 1), position, Pubkey.from_label("impostor")))

    def test_borrower_account_not_associated(self, env):
        call = with_account(borrow_call(ALICE, USDC, 1), BORROWER_ACCOUNT_POS, Pubkey.from_label("side_wallet"))
        self._rejected(env, call)

    def test_pool_account_not_associated(self, env):
        call = with_account(borrow_call(ALICE, USDC, 1), POOL_ACCOUNT_POS, Pubkey.from_label("side_pool"))
        self._rejected(env, call)

    def test_holding_account_read_only(self, env):
        call = borrow_call(ALICE, USDC, 1)
        accounts = list(call.accounts)
        accounts[POOL_ACCOUNT_POS] = AccountMeta.readonly(accounts[POOL_ACCOUNT_POS].pubkey)
        self._rejected(env, Call(call.program_id, tuple(accounts), call.data))

    def test_pool_account_missing(self):
        env = make_env(pool_liquidity=0)
        env.ledger.accounts.pop(env.pool_account)
        receipt = env.runtime.execute(_loan(env, 1))
        assert isinstance(receipt.error, AccountConstraintViolation)


# =============================================================================
# ROLLBACK
# =============================================================================

class TestRollback:
    """Any failure in the batch discards the disbursal."""

    def test_unrelated_failure_in_middle(self, env):
        batch = _loan(env, 100_000_000, pay_call(BOB, ALICE, 1))
        receipt = env.runtime.execute(batch)
        assert receipt.result == ExecuteResult.REJECTED
        assert receipt.failed_call == 1
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.borrower_balance() == BORROWER_FLOAT

    def test_failing_repay_rolls_back_borrow(self, env):
        # Borrower spends the loan, so repay cannot cover principal + fee.
        env.ledger.create_associated_account(BOB, USDC)
        batch = _loan(env, 100_000_000, pay_call(ALICE, BOB, 100_000_000))
        receipt = env.runtime.execute(batch)
        assert isinstance(receipt.error, InsufficientFunds)
        assert receipt.failed_call == 2
        assert env.pool_balance() == POOL_LIQUIDITY
        assert env.ledger.get_balance(get_associated_token_address(BOB, USDC)) == 0

    def test_second_program_instance(self):
        # A second deployment under another id has its own pool and rejects the first's calls.
        env = make_env()
        other = FlashLoanProgram(ProgramConfig(program_id=Pubkey.from_label("flash_loan_v2")))
        env.runtime.register_program(other)
        assert other.pool != env.program.pool
        call = borrow_call(ALICE, USDC, 1)
        rerouted = Call(other.program_id, call.accounts, call.data)
        receipt = env.runtime.execute(build_batch([rerouted, repay_call(ALICE, USDC)]))
        assert isinstance(receipt.error, AccountConstraintViolation)
