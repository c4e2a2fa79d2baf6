#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: Flash Loans Step by Step

A walk through a single-batch flash loan. Each step submits a real batch to
the runtime and shows what the pool and the borrower see afterwards.

WHAT YOU'LL LEARN:
  1-2:  Setup          - Mints, the pool's derived authority, funding
  3-4:  Happy path     - Borrow, use, repay, and where the fee goes
  5-7:  Rejections     - Missing repay, someone else's repay, nested calls
  8:    Guarantees     - Idempotency and conservation

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
import sys

from flashloan import (
    Pubkey, AccountMeta, Call, TokenLedger, Mint, Runtime, ExecuteResult,
    FlashLoanProgram, InvocationContext,
    build_batch, borrow_call, repay_call, transfer_call,
    quote_loan, get_associated_token_address,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    pool_liquidity: int = 1_000_000_000    # 1_000 USDC
    borrower_float: int = 20_000_000       # 20 USDC, enough for a few fees
    principal: int = 100_000_000           # 100 USDC


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv

USDC = Mint(Pubkey.from_label("usdc"), "USDC", decimals=6)
ALICE = Pubkey.from_label("alice")
MALLORY = Pubkey.from_label("mallory")


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def show_balances(ledger: TokenLedger, program: FlashLoanProgram):
    pool_account = get_associated_token_address(program.pool, USDC.address)
    alice_account = get_associated_token_address(ALICE, USDC.address)
    for label, address in (("pool", pool_account), ("alice", alice_account)):
        amount = ledger.get_balance(address) if ledger.has_account(address) else 0
        print(f"  {label:<6} {USDC.to_display(amount):>14} {USDC.symbol}")


class Proxy:
    """A program that forwards a borrow through a nested invocation."""

    program_id = Pubkey.from_label("proxy")

    def __init__(self, inner: Call):
        self.inner = inner

    def process(self, ctx: InvocationContext) -> None:
        ctx.invoke(self.inner)


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    step_header(1, "A Ledger, a Mint and a Program",
        "Register USDC and the flash-loan program with a runtime.")
    ledger = TokenLedger("tutorial", verbose=True, test_mode=True)
    ledger.register_mint(USDC)
    runtime = Runtime(ledger, name="tutorial", verbose=False)
    program = FlashLoanProgram()
    runtime.register_program(program)
    print(f"\nPool authority (derived, no private key): {program.pool!r}")
    print(f"Bump seed: {program.pool_seeds.bump}")
    return ledger, runtime, program


def step_02_fund(ledger: TokenLedger, program: FlashLoanProgram):
    step_header(2, "Funding",
        "Give the pool liquidity and the borrower enough float for fees.")
    pool_account = ledger.create_associated_account(program.pool, USDC.address)
    ledger.mint_to(USDC.address, pool_account, CONFIG.pool_liquidity)
    alice_account = ledger.create_associated_account(ALICE, USDC.address)
    ledger.mint_to(USDC.address, alice_account, CONFIG.borrower_float)
    ledger.verbose = False
    show_balances(ledger, program)


def step_03_loan(runtime: Runtime, program: FlashLoanProgram):
    step_header(3, "Borrow and Repay",
        "Borrow at position 0, repay at the last position, in one batch.")
    quote = quote_loan(CONFIG.principal)
    print(f"Principal {USDC.to_display(quote.principal)}, fee {USDC.to_display(quote.fee)}, "
          f"owed {USDC.to_display(quote.amount_owed)}\n")
    receipt = runtime.execute(build_batch([
        borrow_call(ALICE, USDC.address, CONFIG.principal),
        repay_call(ALICE, USDC.address),
    ]))
    print(repr(receipt))
    show_balances(runtime.ledger, program)


def step_04_use_funds(runtime: Runtime, program: FlashLoanProgram):
    step_header(4, "Using the Funds",
        "Calls between borrow and repay can spend the loan, as long as it comes back.")
    ledger = runtime.ledger
    mallory_account = ledger.create_associated_account(MALLORY, USDC.address)
    alice_account = get_associated_token_address(ALICE, USDC.address)
    receipt = runtime.execute(build_batch([
        borrow_call(ALICE, USDC.address, CONFIG.principal),
        transfer_call(alice_account, mallory_account, ALICE, CONFIG.principal),
        transfer_call(mallory_account, alice_account, MALLORY, CONFIG.principal),
        repay_call(ALICE, USDC.address),
    ]))
    print(f"Result: {receipt.result.value}")
    show_balances(ledger, program)


def step_05_no_repay(runtime: Runtime, program: FlashLoanProgram):
    step_header(5, "Borrow Without Repay",
        "A batch that never repays is rejected and the disbursal disappears.")
    receipt = runtime.execute(build_batch([borrow_call(ALICE, USDC.address, CONFIG.principal)]))
    print(f"Result: {receipt.result.value}")
    print(f"Error:  {receipt.error}")
    show_balances(runtime.ledger, program)


def step_06_wrong_repay(runtime: Runtime, program: FlashLoanProgram):
    step_header(6, "Someone Else's Repay",
        "The closing repay must name the borrower's own holding account.")
    receipt = runtime.execute(build_batch([
        borrow_call(ALICE, USDC.address, CONFIG.principal),
        repay_call(MALLORY, USDC.address),
    ]))
    print(f"Result: {receipt.result.value}")
    print(f"Error:  {receipt.error}")


def step_07_nested(runtime: Runtime, program: FlashLoanProgram):
    step_header(7, "Borrowing Through Another Program",
        "Borrow only runs as a top-level call of the batch.")
    runtime.register_program(Proxy(borrow_call(ALICE, USDC.address, CONFIG.principal)))
    outer = Call(Proxy.program_id, (AccountMeta.writable(ALICE, signer=True),))
    receipt = runtime.execute(build_batch([outer, repay_call(ALICE, USDC.address)]))
    print(f"Result: {receipt.result.value}")
    print(f"Error:  {receipt.error}")


def step_08_guarantees(runtime: Runtime, program: FlashLoanProgram):
    step_header(8, "Idempotency and Conservation",
        "The same batch applies once; supply never changes.")
    batch = build_batch([
        borrow_call(ALICE, USDC.address, CONFIG.principal),
        repay_call(ALICE, USDC.address),
    ], nonce=99)
    first = runtime.execute(batch)
    second = runtime.execute(batch)
    print(f"First submission:  {first.result.value}")
    print(f"Second submission: {second.result.value}")
    assert second.result == ExecuteResult.ALREADY_APPLIED

    check = runtime.ledger.verify_conservation()
    print(f"\nConservation holds: {check['valid']}")
    print(f"Total supply: {USDC.to_display(check['supplies'][USDC.address])} {USDC.symbol}")
    show_balances(runtime.ledger, program)


def main():
    """Run the complete tutorial."""
    print("=" * 70)
    print("       FLASH LOANS - INTERACTIVE TUTORIAL")
    print("=" * 70)
    if QUICK_MODE:
        print("Running in QUICK mode (no pauses)")
    else:
        print("Running in INTERACTIVE mode (press Enter to advance)")
    wait_for_enter()

    ledger, runtime, program = step_01_setup()
    wait_for_enter()

    step_02_fund(ledger, program)
    wait_for_enter()

    for step in (step_03_loan, step_04_use_funds, step_05_no_repay,
                 step_06_wrong_repay, step_07_nested, step_08_guarantees):
        step(runtime, program)
        wait_for_enter()

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    Next steps:
      - See flashloan/program.py for the borrow/repay checks
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
