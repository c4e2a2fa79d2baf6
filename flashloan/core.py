"""
Core types and pure functions for the flash-loan system.

This module provides the foundational data structures shared by every other module:
1. Identifiers: Pubkey and the well-known program / view addresses
2. Immutable data structures: AccountMeta, Call
3. Exceptions: LedgerError and the flash-loan error taxonomy
4. Operation tags and the little-endian payload codec
5. Checked integer arithmetic at fixed native widths (u64 / u128)

All functions in this module are pure. Nothing here touches balances;
mutation lives in ledger.TokenLedger and is driven by runtime.Runtime.
"""

from __future__ import annotations
from dataclasses import dataclass
import hashlib
import struct
from typing import Optional, Sequence, Tuple


# ============================================================================
# CONSTANTS
# ============================================================================

PUBKEY_BYTES = 32

# Native integer widths used by the protocol arithmetic.
U16_MAX = (1 << 16) - 1
U64_MAX = (1 << 64) - 1
U128_MAX = (1 << 128) - 1

# Length of the operation tag at the head of every payload.
TAG_BYTES = 8

# Namespace prefix hashed together with an entry-point name to form its tag.
TAG_NAMESPACE = "global"

_U64 = struct.Struct("<Q")


# ============================================================================
# IDENTIFIERS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Pubkey:
    """
    A 32-byte account or program identifier.

    Instances are immutable and hashable, so they can key dictionaries and
    live in frozensets of signers.
    """
    raw: bytes

    def __post_init__(self):
        if not isinstance(self.raw, (bytes, bytearray)):
            raise ValueError(f"Pubkey must be bytes, got {type(self.raw)}")
        if len(self.raw) != PUBKEY_BYTES:
            raise ValueError(f"Pubkey must be {PUBKEY_BYTES} bytes, got {len(self.raw)}")
        if isinstance(self.raw, bytearray):
            object.__setattr__(self, 'raw', bytes(self.raw))

    @classmethod
    def from_label(cls, label: str) -> Pubkey:
        """Deterministic identifier for a human-readable label (sha256 of the label)."""
        return cls(hashlib.sha256(label.encode()).digest())

    def __bytes__(self) -> bytes:
        return self.raw

    def __str__(self) -> str:
        return self.raw.hex()

    def __repr__(self) -> str:
        return f"Pubkey({self.raw.hex()[:12]}...)"


# Well-known identifiers. The system program is the all-zero key.
SYSTEM_PROGRAM_ID = Pubkey(bytes(PUBKEY_BYTES))
TOKEN_PROGRAM_ID = Pubkey.from_label("token_program")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_label("associated_token_program")
INSTRUCTIONS_SYSVAR_ID = Pubkey.from_label("sysvar_instructions")

BUILTIN_PROGRAM_IDS = frozenset({
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    ASSOCIATED_TOKEN_PROGRAM_ID,
    INSTRUCTIONS_SYSVAR_ID,
})


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for every failure that aborts a batch."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a transfer would take a holding account below zero."""
    pass


class BalanceConstraintViolation(LedgerError):
    """Raised when a transfer or issuance would push a balance or supply past u64."""
    pass


class TransferRuleViolation(LedgerError):
    """Raised when a transfer request is malformed (non-positive amount, wrong type)."""
    pass


class InvalidAuthority(LedgerError):
    """Raised when the transfer authority does not own the source or did not sign."""
    pass


class AccountNotFound(LedgerError):
    """Raised when a holding account or mint is not known to the ledger."""
    pass


class MintMismatch(LedgerError):
    """Raised when source and destination hold different mints."""
    pass


class InvalidSeeds(LedgerError):
    """Raised when seeds cannot produce a program-derived address."""
    pass


class IndexOutOfRange(LedgerError):
    """Raised when a batch position outside [0, length) is requested."""
    pass


class InvalidBatchData(LedgerError):
    """Raised when the serialized batch view is truncated or inconsistent."""
    pass


class AccountConstraintViolation(LedgerError):
    """Raised when a call's account list does not satisfy the program's schema."""
    pass


class MissingRequiredSignature(LedgerError):
    """Raised when an account flagged as signer has no matching signature."""
    pass


class UnknownProgram(LedgerError):
    """Raised when a call targets a program id that is not registered."""
    pass


class CallDepthExceeded(LedgerError):
    """Raised when nested invocations exceed the runtime's depth limit."""
    pass


class ProtocolError(LedgerError):
    """
    Base class for errors raised by the flash-loan program itself.

    Each subclass carries a stable numeric code and a short message, so a
    rejected batch can be reported the same way regardless of which check
    tripped. Codes start at 6000 and follow declaration order.
    """
    code: int = 6000
    msg: str = "Protocol error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail
        text = f"Error {self.code}: {self.msg}"
        if detail:
            text = f"{text} ({detail})"
        super().__init__(text)


class InvalidInstruction(ProtocolError):
    code = 6000
    msg = "Invalid instruction"


class InvalidIndex(ProtocolError):
    code = 6001
    msg = "Invalid instruction index"


class InvalidAmount(ProtocolError):
    code = 6002
    msg = "Invalid amount"


# 6003 is reserved: the not-enough-funds condition is reported by the
# transfer primitive as InsufficientFunds.


class ProgramMismatch(ProtocolError):
    code = 6004
    msg = "Program Mismatch"


class InvalidProgram(ProtocolError):
    code = 6005
    msg = "Invalid program"


class InvalidBorrowerAccount(ProtocolError):
    code = 6006
    msg = "Invalid borrower account"


class InvalidPoolAccount(ProtocolError):
    code = 6007
    msg = "Invalid pool account"


class MissingRepayInstruction(ProtocolError):
    code = 6008
    msg = "Missing repay instruction"


class MissingBorrowInstruction(ProtocolError):
    code = 6009
    msg = "Missing borrow instruction"


class Overflow(ProtocolError):
    code = 6010
    msg = "Overflow"


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class AccountMeta:
    """
    One account reference inside a Call.

    Attributes:
        pubkey: The referenced account.
        is_signer: The batch must carry this account's signature.
        is_writable: The call may change this account.
    """
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False

    def __post_init__(self):
        if not isinstance(self.pubkey, Pubkey):
            raise ValueError(f"AccountMeta pubkey must be Pubkey, got {type(self.pubkey)}")

    @classmethod
    def writable(cls, pubkey: Pubkey, signer: bool = False) -> AccountMeta:
        return cls(pubkey, is_signer=signer, is_writable=True)

    @classmethod
    def readonly(cls, pubkey: Pubkey, signer: bool = False) -> AccountMeta:
        return cls(pubkey, is_signer=signer, is_writable=False)


@dataclass(frozen=True, slots=True)
class Call:
    """
    A single invocation of a program entry point within a batch.

    Attributes:
        program_id: The program that handles this call.
        accounts: Ordered account references; positions are significant.
        data: Opaque payload; bytes [0, 8) carry the operation tag.

    This class is immutable (frozen=True). Lists passed for accounts are
    converted to tuples so a Call can be hashed and shared safely.
    """
    program_id: Pubkey
    accounts: Tuple[AccountMeta, ...] = ()
    data: bytes = b""

    def __post_init__(self):
        if not isinstance(self.program_id, Pubkey):
            raise ValueError(f"Call program_id must be Pubkey, got {type(self.program_id)}")
        accounts = tuple(self.accounts)
        for meta in accounts:
            if not isinstance(meta, AccountMeta):
                raise ValueError(f"Call accounts must be AccountMeta, got {type(meta)}")
        object.__setattr__(self, 'accounts', accounts)
        object.__setattr__(self, 'data', bytes(self.data))
        if len(accounts) > U16_MAX:
            raise ValueError(f"Call has too many accounts: {len(accounts)}")
        if len(self.data) > U16_MAX:
            raise ValueError(f"Call payload too large: {len(self.data)} bytes")

    @property
    def tag(self) -> Optional[bytes]:
        """The leading operation tag, or None if the payload is too short to carry one."""
        if len(self.data) < TAG_BYTES:
            return None
        return self.data[:TAG_BYTES]

    def account_key(self, position: int) -> Optional[Pubkey]:
        """Return the account at a position, or None if the call has no such position."""
        if 0 <= position < len(self.accounts):
            return self.accounts[position].pubkey
        return None

    def __repr__(self) -> str:
        return f"Call({self.program_id!r}, {len(self.accounts)} accounts, {len(self.data)} bytes)"


# ============================================================================
# OPERATION TAGS AND PAYLOAD CODEC
# ============================================================================

def operation_tag(name: str) -> bytes:
    """
    Compute the 8-byte tag for an entry point.

    The tag is the first 8 bytes of sha256("global:<name>"), so distinct
    entry-point names give distinct, stable tags.
    """
    if not name:
        raise ValueError("entry point name cannot be empty")
    return hashlib.sha256(f"{TAG_NAMESPACE}:{name}".encode()).digest()[:TAG_BYTES]


def encode_u64(value: int) -> bytes:
    """Encode an unsigned 64-bit integer as 8 little-endian bytes."""
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"u64 value must be int, got {type(value)}")
    if value < 0 or value > U64_MAX:
        raise ValueError(f"value {value} does not fit in u64")
    return _U64.pack(value)


def decode_u64(data: bytes, offset: int = 0) -> int:
    """
    Decode a little-endian u64 at offset.

    Raises:
        ValueError: If fewer than 8 bytes are available at offset.
    """
    if offset < 0 or offset + _U64.size > len(data):
        raise ValueError(f"need 8 bytes at offset {offset}, payload has {len(data)}")
    return _U64.unpack_from(data, offset)[0]


def encode_payload(tag: bytes, *fields: int) -> bytes:
    """Build a payload: the tag followed by u64 fields."""
    if len(tag) != TAG_BYTES:
        raise ValueError(f"tag must be {TAG_BYTES} bytes, got {len(tag)}")
    return tag + b"".join(encode_u64(f) for f in fields)


# ============================================================================
# CHECKED ARITHMETIC
# ============================================================================
#
# Python integers never wrap, so every result is compared against the
# declared width explicitly. Anything that leaves [0, 2**bits) raises
# Overflow instead of being truncated.

def _width_max(bits: int) -> int:
    if bits == 64:
        return U64_MAX
    if bits == 128:
        return U128_MAX
    raise ValueError(f"unsupported integer width: {bits}")


def checked_cast(value: int, bits: int = 64) -> int:
    """Return value unchanged if it fits an unsigned `bits`-wide integer."""
    if value < 0 or value > _width_max(bits):
        raise Overflow(f"{value} does not fit in u{bits}")
    return value


def checked_add(a: int, b: int, bits: int = 64) -> int:
    return checked_cast(checked_cast(a, bits) + checked_cast(b, bits), bits)


def checked_mul(a: int, b: int, bits: int = 64) -> int:
    return checked_cast(checked_cast(a, bits) * checked_cast(b, bits), bits)


def checked_div(a: int, b: int, bits: int = 64) -> int:
    """Floor division; a zero divisor is reported as Overflow."""
    if b == 0:
        raise Overflow("division by zero")
    return checked_cast(checked_cast(a, bits) // checked_cast(b, bits), bits)


def signer_keys(accounts: Sequence[AccountMeta]) -> frozenset:
    """The set of keys a call marks as signers."""
    return frozenset(meta.pubkey for meta in accounts if meta.is_signer)
