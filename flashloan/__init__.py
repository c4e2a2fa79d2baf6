"""
flashloan - Single-batch flash loans over a token ledger

Uncollateralized loans that are disbursed and repaid inside one atomic
batch of calls. The borrow call inspects its sibling calls through the
serialized batch view and refuses to pay out unless the batch ends with a
matching repay; the runtime discards the whole batch if anything fails.

Usage:
    from flashloan import (
        Runtime, TokenLedger, Mint, Pubkey, FlashLoanProgram,
        borrow_call, repay_call, build_batch, get_associated_token_address,
    )

    ledger = TokenLedger("main", test_mode=True)
    usdc = Mint(Pubkey.from_label("usdc"), "USDC", decimals=6)
    ledger.register_mint(usdc)

    runtime = Runtime(ledger)
    program = FlashLoanProgram()
    runtime.register_program(program)

    pool_account = ledger.create_associated_account(program.pool, usdc.address)
    ledger.mint_to(usdc.address, pool_account, 1_000_000_000)

    alice = Pubkey.from_label("alice")
    receipt = runtime.execute(build_batch([
        borrow_call(alice, usdc.address, 100_000_000),
        # ... use the funds ...
        repay_call(alice, usdc.address),
    ]))
"""

# Core types
from .core import (
    Pubkey,
    AccountMeta,
    Call,
    LedgerError,
    InsufficientFunds,
    BalanceConstraintViolation,
    TransferRuleViolation,
    InvalidAuthority,
    AccountNotFound,
    MintMismatch,
    InvalidSeeds,
    IndexOutOfRange,
    InvalidBatchData,
    AccountConstraintViolation,
    MissingRequiredSignature,
    UnknownProgram,
    CallDepthExceeded,
    ProtocolError,
    InvalidInstruction,
    InvalidIndex,
    InvalidAmount,
    ProgramMismatch,
    InvalidProgram,
    InvalidBorrowerAccount,
    InvalidPoolAccount,
    MissingRepayInstruction,
    MissingBorrowInstruction,
    Overflow,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
    U64_MAX,
    U128_MAX,
    operation_tag,
    encode_u64,
    decode_u64,
    encode_payload,
    checked_cast,
    checked_add,
    checked_mul,
    checked_div,
)

# Program-derived addresses
from .pda import (
    SignerSeeds,
    is_on_curve,
    create_program_address,
    find_program_address,
    get_associated_token_address,
)

# Batch view
from .introspection import (
    BatchIntrospector,
    serialize_calls,
)

# Token state
from .ledger import (
    Mint,
    TokenAccount,
    TransferRecord,
    TokenView,
    TokenLedger,
)

# Execution
from .runtime import (
    ExecuteResult,
    Batch,
    BatchReceipt,
    BatchRecord,
    Program,
    InvocationContext,
    TokenProgram,
    Runtime,
    build_batch,
    transfer_call,
    MAX_CALL_DEPTH,
)

# Flash-loan program
from .program import (
    FLASH_LOAN_PROGRAM_ID,
    FEE_BPS,
    BPS_DENOMINATOR,
    POOL_SEED,
    BORROW_TAG,
    REPAY_TAG,
    BORROWER_ACCOUNT_POS,
    POOL_ACCOUNT_POS,
    ProgramConfig,
    LoanQuote,
    LoanAccounts,
    FlashLoanProgram,
    calculate_fee,
    calculate_amount_owed,
    quote_loan,
    holding_accounts,
    check_direct_invocation, check_leading_call,
    check_repay_tail,
    read_borrowed_principal,
    load_loan_accounts,
    loan_account_metas,
    borrow_call,
    repay_call,
)

__all__ = [
    # Core
    'Pubkey', 'AccountMeta', 'Call',
    'SYSTEM_PROGRAM_ID', 'TOKEN_PROGRAM_ID', 'ASSOCIATED_TOKEN_PROGRAM_ID',
    'INSTRUCTIONS_SYSVAR_ID', 'U64_MAX', 'U128_MAX',
    'operation_tag', 'encode_u64', 'decode_u64', 'encode_payload',
    'checked_cast', 'checked_add', 'checked_mul', 'checked_div',
    # Errors
    'LedgerError', 'InsufficientFunds', 'BalanceConstraintViolation',
    'TransferRuleViolation', 'InvalidAuthority', 'AccountNotFound', 'MintMismatch',
    'InvalidSeeds', 'IndexOutOfRange', 'InvalidBatchData',
    'AccountConstraintViolation', 'MissingRequiredSignature', 'UnknownProgram',
    'CallDepthExceeded',
    'ProtocolError', 'InvalidInstruction', 'InvalidIndex', 'InvalidAmount',
    'ProgramMismatch', 'InvalidProgram', 'InvalidBorrowerAccount', 'InvalidPoolAccount',
    'MissingRepayInstruction', 'MissingBorrowInstruction', 'Overflow',
    # PDA
    'SignerSeeds', 'is_on_curve', 'create_program_address', 'find_program_address',
    'get_associated_token_address',
    # Introspection
    'BatchIntrospector', 'serialize_calls',
    # Ledger
    'Mint', 'TokenAccount', 'TransferRecord', 'TokenView', 'TokenLedger',
    # Runtime
    'ExecuteResult', 'Batch', 'BatchReceipt', 'BatchRecord', 'Program',
    'InvocationContext', 'TokenProgram', 'Runtime', 'build_batch', 'transfer_call',
    'MAX_CALL_DEPTH',
    # Program
    'FLASH_LOAN_PROGRAM_ID', 'FEE_BPS', 'BPS_DENOMINATOR', 'POOL_SEED',
    'BORROW_TAG', 'REPAY_TAG', 'BORROWER_ACCOUNT_POS', 'POOL_ACCOUNT_POS',
    'ProgramConfig', 'LoanQuote', 'LoanAccounts', 'FlashLoanProgram',
    'calculate_fee', 'calculate_amount_owed', 'quote_loan',
    'holding_accounts', 'check_direct_invocation', 'check_leading_call', 'check_repay_tail',
    'read_borrowed_principal', 'load_loan_accounts',
    'loan_account_metas', 'borrow_call', 'repay_call',
]

__version__ = '1.0.0'
