"""
program.py - Single-batch flash loans

A borrower takes funds from the pool with no collateral. The only guarantee
is structural: the batch that disburses the loan must also repay it, and the
runtime discards the disbursal if the repayment does not happen.

=== ENTRY POINTS ===

    borrow(principal)   runs as call 0 of the batch
        1. principal > 0
        2. pool -> borrower transfer, signed with the pool's signer seeds
        3. the executing top-level call is this program (no nested invocation)
        4. that top-level call is call 0
        5. the last call of the batch is this program's repay
        6. that repay names the same borrower / pool holding accounts

    repay()             closes the batch; borrow's tail check enforces that
        1. call 0 is this program's borrow (and is not this call)
        2. principal is read from call 0's payload, never passed in
        3. owed = principal + floor(principal * fee_bps / 10_000), checked
        4. borrower -> pool transfer, signed by the borrower

=== WIRE FORMAT ===

    payload[0:8]   operation tag, sha256("global:<entry point>")[:8]
    payload[8:16]  borrow only: principal, little-endian u64

Account positions are shared by both entry points; see LOAN_ACCOUNT_LAYOUT.
Sibling calls are only ever read through holding_accounts(), so the
position-3 / position-4 convention lives in one place.

=== PURE FUNCTIONS ===

    calculate_fee(principal, fee_bps) -> int
    calculate_amount_owed(principal, fee_bps) -> int
    check_direct_invocation(introspector, program_id) -> int
    check_leading_call(index) -> None
    check_repay_tail(introspector, program_id, index, borrower_account, pool_account) -> Call
    read_borrowed_principal(introspector, program_id) -> int

All trivially testable with BatchIntrospector.from_calls().
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Tuple

from .core import (
    Pubkey, AccountMeta, Call,
    AccountConstraintViolation, AccountNotFound, IndexOutOfRange,
    InvalidAmount, InvalidIndex, InvalidInstruction, InvalidProgram, ProgramMismatch,
    InvalidBorrowerAccount, InvalidPoolAccount,
    MissingRepayInstruction, MissingBorrowInstruction,
    TAG_BYTES, SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    operation_tag, encode_payload, decode_u64,
    checked_add, checked_cast, checked_div, checked_mul,
)
from .introspection import BatchIntrospector
from .pda import SignerSeeds, find_program_address, get_associated_token_address
from .runtime import InvocationContext, transfer_call


# =============================================================================
# CONSTANTS
# =============================================================================

FLASH_LOAN_PROGRAM_ID = Pubkey.from_label("flash_loan")

# Protocol fee: 500 basis points = 5% of principal.
FEE_BPS = 500
BPS_DENOMINATOR = 10_000

# Seed labelling the pool's derived authority.
POOL_SEED = b"protocol"

BORROW_TAG = operation_tag("borrow")
REPAY_TAG = operation_tag("repay")

PRINCIPAL_OFFSET = TAG_BYTES
BORROW_PAYLOAD_LEN = PRINCIPAL_OFFSET + 8

# Account layout shared by borrow and repay.
BORROWER_POS = 0
POOL_POS = 1
MINT_POS = 2
BORROWER_ACCOUNT_POS = 3
POOL_ACCOUNT_POS = 4
INSTRUCTIONS_POS = 5
TOKEN_PROGRAM_POS = 6
ASSOCIATED_TOKEN_PROGRAM_POS = 7
SYSTEM_PROGRAM_POS = 8

LOAN_ACCOUNT_LAYOUT = (
    "borrower", "pool", "mint", "borrower_account", "pool_account",
    "instructions", "token_program", "associated_token_program", "system_program",
)

_FIXED_ADDRESSES = (
    (INSTRUCTIONS_POS, INSTRUCTIONS_SYSVAR_ID, "instructions"),
    (TOKEN_PROGRAM_POS, TOKEN_PROGRAM_ID, "token_program"),
    (ASSOCIATED_TOKEN_PROGRAM_POS, ASSOCIATED_TOKEN_PROGRAM_ID, "associated_token_program"),
    (SYSTEM_PROGRAM_POS, SYSTEM_PROGRAM_ID, "system_program"),
)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class ProgramConfig:
    """
    Deployment configuration for a flash-loan program.

    Attributes:
        program_id: Identity the program is registered under.
        fee_bps: Fee in basis points of principal (fixed per deployment).
        pool_seed: Seed labelling the pool's derived authority.
    """
    program_id: Pubkey = FLASH_LOAN_PROGRAM_ID
    fee_bps: int = FEE_BPS
    pool_seed: bytes = POOL_SEED

    def __post_init__(self):
        if not 0 <= self.fee_bps <= BPS_DENOMINATOR:
            raise ValueError(f"fee_bps must be in [0, {BPS_DENOMINATOR}], got {self.fee_bps}")
        if not self.pool_seed or len(self.pool_seed) > 32:
            raise ValueError("pool_seed must be 1 to 32 bytes")

    def pool_address(self) -> Tuple[Pubkey, int]:
        """(pool authority, bump) derived from pool_seed under program_id."""
        return find_program_address([self.pool_seed], self.program_id)


# =============================================================================
# FEE ARITHMETIC
# =============================================================================

@dataclass(frozen=True, slots=True)
class LoanQuote:
    """Principal, fee and total owed for one loan."""
    principal: int
    fee: int
    amount_owed: int


def calculate_fee(principal: int, fee_bps: int = FEE_BPS) -> int:
    """
    Fee on a principal: floor(principal * fee_bps / 10_000).

    The multiply is widened to u128 so a large principal cannot wrap; the
    result is narrowed back to u64.

    Example:
        calculate_fee(100_000_000) == 5_000_000   # 5%

    Raises:
        Overflow: If principal is not a u64 or any step leaves its width
    """
    checked_cast(principal, 64)
    scaled = checked_mul(principal, fee_bps, bits=128)
    fee = checked_div(scaled, BPS_DENOMINATOR, bits=128)
    return checked_cast(fee, 64)


def calculate_amount_owed(principal: int, fee_bps: int = FEE_BPS) -> int:
    """principal + fee, checked at u64."""
    return checked_add(principal, calculate_fee(principal, fee_bps), bits=64)


def quote_loan(principal: int, fee_bps: int = FEE_BPS) -> LoanQuote:
    fee = calculate_fee(principal, fee_bps)
    return LoanQuote(principal, fee, checked_add(principal, fee, bits=64))


# =============================================================================
# BATCH LINKAGE CHECKS
# =============================================================================

def holding_accounts(call: Call) -> Tuple[Optional[Pubkey], Optional[Pubkey]]:
    """(borrower holding account, pool holding account) named by a loan call."""
    return call.account_key(BORROWER_ACCOUNT_POS), call.account_key(POOL_ACCOUNT_POS)


def check_direct_invocation(introspector: BatchIntrospector, program_id: Pubkey) -> int:
    """
    Require that the executing top-level call belongs to this program.

    A program reached through another program's nested invocation sees the
    caller's top-level call here, so this rejects indirection.

    Returns:
        The current call index

    Raises:
        InvalidIndex: If the batch view has no usable current index
        ProgramMismatch: If the top-level call belongs to another program
    """
    index = introspector.current_call_index()
    try:
        current = introspector.call_at(index)
    except IndexOutOfRange as exc:
        raise InvalidIndex(str(exc)) from exc
    if current.program_id != program_id:
        raise ProgramMismatch(f"top-level call {index} belongs to {current.program_id!r}")
    return index


def check_leading_call(index: int) -> None:
    """
    Require that borrow runs as call 0.

    Repay always charges the principal named by call 0, so a borrow anywhere
    else would be settled at another borrow's price.

    Raises:
        InvalidInstruction: If index is not 0
    """
    if index != 0:
        raise InvalidInstruction(f"borrow must be call 0 of the batch, found at {index}")


def check_repay_tail(
    introspector: BatchIntrospector,
    program_id: Pubkey,
    current_index: int,
    borrower_account: Pubkey,
    pool_account: Pubkey,
) -> Call:
    """
    Require that the last call of the batch repays this loan.

    Returns:
        The repay call

    Raises:
        MissingRepayInstruction: If no call follows the current one
        InvalidProgram: If the last call belongs to another program
        InvalidInstruction: If the last call is not tagged repay
        InvalidBorrowerAccount: If it names another borrower holding account
        InvalidPoolAccount: If it names another pool holding account
    """
    last = introspector.total_calls() - 1
    if last <= current_index:
        raise MissingRepayInstruction(f"no call after position {current_index}")
    tail = introspector.call_at(last)

    if tail.program_id != program_id:
        raise InvalidProgram(f"last call belongs to {tail.program_id!r}")
    if tail.tag != REPAY_TAG:
        raise InvalidInstruction("last call is not a repay")

    tail_borrower, tail_pool = holding_accounts(tail)
    if tail_borrower != borrower_account:
        raise InvalidBorrowerAccount(f"repay names {tail_borrower!r}")
    if tail_pool != pool_account:
        raise InvalidPoolAccount(f"repay names {tail_pool!r}")
    return tail


def read_borrowed_principal(introspector: BatchIntrospector, program_id: Pubkey) -> int:
    """
    Recover the principal from the borrow at position 0.

    The amount is never taken from the repay call itself, so a borrower
    cannot claim to owe less than was disbursed.

    Raises:
        MissingBorrowInstruction: If no call precedes this one
        InvalidProgram: If call 0 belongs to another program
        InvalidInstruction: If call 0 is not a well-formed borrow
    """
    if introspector.current_call_index() == 0:
        raise MissingBorrowInstruction("repay is the first call of the batch")
    try:
        head = introspector.call_at(0)
    except IndexOutOfRange as exc:
        raise MissingBorrowInstruction(str(exc)) from exc

    if head.program_id != program_id:
        raise InvalidProgram(f"first call belongs to {head.program_id!r}")
    if head.tag != BORROW_TAG:
        raise InvalidInstruction("first call is not a borrow")
    if len(head.data) < BORROW_PAYLOAD_LEN:
        raise InvalidInstruction(f"borrow payload is {len(head.data)} bytes")
    return decode_u64(head.data, PRINCIPAL_OFFSET)


# =============================================================================
# ACCOUNT SCHEMA
# =============================================================================

@dataclass(frozen=True, slots=True)
class LoanAccounts:
    """Validated accounts of one borrow or repay call."""
    borrower: Pubkey
    pool: Pubkey
    mint: Pubkey
    borrower_account: Pubkey
    pool_account: Pubkey


def load_loan_accounts(ctx: InvocationContext, pool: Pubkey) -> LoanAccounts:
    """
    Validate a loan call's accounts and provision the borrower's holding account.

    This is the only place that reads the call's own account list.

    Raises:
        AccountConstraintViolation: On any schema violation
    """
    if len(ctx.accounts) < len(LOAN_ACCOUNT_LAYOUT):
        raise AccountConstraintViolation(
            f"not enough account keys: need {len(LOAN_ACCOUNT_LAYOUT)}, got {len(ctx.accounts)}"
        )

    borrower_meta = ctx.account(BORROWER_POS)
    if not borrower_meta.is_signer or not ctx.is_signer(borrower_meta.pubkey):
        raise AccountConstraintViolation("borrower must sign")
    borrower = borrower_meta.pubkey

    if ctx.account(POOL_POS).pubkey != pool:
        raise AccountConstraintViolation("pool does not match its seeds")

    mint = ctx.account(MINT_POS).pubkey
    try:
        ctx.view.get_mint(mint)
    except AccountNotFound as exc:
        raise AccountConstraintViolation(f"unknown mint {mint!r}") from exc

    for position, expected, name in _FIXED_ADDRESSES:
        if ctx.account(position).pubkey != expected:
            raise AccountConstraintViolation(f"{name} has the wrong address")

    borrower_holding = ctx.account(BORROWER_ACCOUNT_POS)
    pool_holding = ctx.account(POOL_ACCOUNT_POS)
    if borrower_holding.pubkey != get_associated_token_address(borrower, mint):
        raise AccountConstraintViolation("borrower_account is not the borrower's associated account")
    if pool_holding.pubkey != get_associated_token_address(pool, mint):
        raise AccountConstraintViolation("pool_account is not the pool's associated account")
    if not borrower_holding.is_writable or not pool_holding.is_writable:
        raise AccountConstraintViolation("holding accounts must be writable")
    if not ctx.view.has_account(pool_holding.pubkey):
        raise AccountConstraintViolation("pool_account is not initialized")

    if not ctx.view.has_account(borrower_holding.pubkey):
        ctx.create_associated_account(borrower, mint)
        ctx.log(f"Created borrower account {borrower_holding.pubkey}")

    return LoanAccounts(
        borrower=borrower,
        pool=pool,
        mint=mint,
        borrower_account=borrower_holding.pubkey,
        pool_account=pool_holding.pubkey,
    )


# =============================================================================
# PROGRAM
# =============================================================================

class FlashLoanProgram:
    """
    The flash-loan program: dispatches borrow and repay calls.

    The pool authority is derived once at construction and kept as a
    SignerSeeds capability; it is the only way the program can move pool funds.
    """

    def __init__(self, config: Optional[ProgramConfig] = None):
        self.config = config or ProgramConfig()
        self.pool, bump = self.config.pool_address()
        self.pool_seeds = SignerSeeds((self.config.pool_seed,), bump)

    @property
    def program_id(self) -> Pubkey:
        return self.config.program_id

    def process(self, ctx: InvocationContext) -> None:
        tag = ctx.call.tag
        if tag == BORROW_TAG:
            if len(ctx.data) < BORROW_PAYLOAD_LEN:
                raise InvalidInstruction(f"borrow payload is {len(ctx.data)} bytes")
            self.borrow(ctx, decode_u64(ctx.data, PRINCIPAL_OFFSET))
        elif tag == REPAY_TAG:
            self.repay(ctx)
        else:
            raise InvalidInstruction("unrecognized operation tag")

    def borrow(self, ctx: InvocationContext, principal: int) -> None:
        if principal <= 0:
            raise InvalidAmount(f"principal must be positive, got {principal}")
        accounts = load_loan_accounts(ctx, self.pool)

        # Disburse first; a failed check below rolls the whole batch back.
        ctx.invoke(
            transfer_call(accounts.pool_account, accounts.borrower_account, accounts.pool, principal),
            signer_seeds=(self.pool_seeds,),
        )
        ctx.log(f"Borrow: {principal}")

        introspector = ctx.introspector()
        current_index = check_direct_invocation(introspector, self.program_id)
        check_leading_call(current_index)
        check_repay_tail(
            introspector, self.program_id, current_index,
            accounts.borrower_account, accounts.pool_account,
        )

    def repay(self, ctx: InvocationContext) -> None:
        accounts = load_loan_accounts(ctx, self.pool)
        principal = read_borrowed_principal(ctx.introspector(), self.program_id)
        quote = quote_loan(principal, self.config.fee_bps)

        ctx.invoke(transfer_call(
            accounts.borrower_account, accounts.pool_account, accounts.borrower, quote.amount_owed,
        ))
        ctx.log(f"Repay: {quote.amount_owed} (principal {quote.principal}, fee {quote.fee})")


# =============================================================================
# CALL BUILDERS
# =============================================================================

def loan_account_metas(borrower: Pubkey, mint: Pubkey, config: Optional[ProgramConfig] = None) -> Tuple[AccountMeta, ...]:
    """Account list for a borrow or repay call, in LOAN_ACCOUNT_LAYOUT order."""
    config = config or ProgramConfig()
    pool, _ = config.pool_address()
    return (
        AccountMeta.writable(borrower, signer=True),
        AccountMeta.readonly(pool),
        AccountMeta.readonly(mint),
        AccountMeta.writable(get_associated_token_address(borrower, mint)),
        AccountMeta.writable(get_associated_token_address(pool, mint)),
        AccountMeta.readonly(INSTRUCTIONS_SYSVAR_ID),
        AccountMeta.readonly(TOKEN_PROGRAM_ID),
        AccountMeta.readonly(ASSOCIATED_TOKEN_PROGRAM_ID),
        AccountMeta.readonly(SYSTEM_PROGRAM_ID),
    )


def borrow_call(borrower: Pubkey, mint: Pubkey, principal: int, config: Optional[ProgramConfig] = None) -> Call:
    config = config or ProgramConfig()
    return Call(config.program_id, loan_account_metas(borrower, mint, config), encode_payload(BORROW_TAG, principal))


def repay_call(borrower: Pubkey, mint: Pubkey, config: Optional[ProgramConfig] = None) -> Call:
    config = config or ProgramConfig()
    return Call(config.program_id, loan_account_metas(borrower, mint, config), encode_payload(REPAY_TAG))
