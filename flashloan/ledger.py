"""
ledger.py - Token balances and the transfer primitive

TokenLedger is the only module that mutates balances. It keeps mint
definitions and holding accounts, moves value between accounts through
transfer(), and supports snapshot/restore so the runtime can discard every
effect of a failed batch.

Key responsibilities:
    - Implements the TokenView protocol for read-only access by programs
    - Enforces the transfer rules: same mint, a signing owner,
      no negative balances, no u64 overflow
    - Provisions associated holding accounts on demand
    - Always validates and always logs
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Protocol, Tuple, runtime_checkable

from .core import (
    Pubkey,
    U64_MAX,
    LedgerError, InsufficientFunds, BalanceConstraintViolation, TransferRuleViolation,
    InvalidAuthority, AccountNotFound, MintMismatch,
)
from .pda import get_associated_token_address


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Mint:
    """
    Definition of an asset.

    Attributes:
        address: Mint identifier.
        symbol: Short display name (e.g., "USDC").
        decimals: Decimal places between base units and display units.
    """
    address: Pubkey
    symbol: str
    decimals: int = 6

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Mint symbol cannot be empty")
        if not 0 <= self.decimals <= 18:
            raise ValueError(f"Mint decimals must be in [0, 18], got {self.decimals}")

    def to_display(self, amount: int) -> Decimal:
        """Convert base units to a display amount (1_500_000 -> Decimal('1.5') at 6 decimals)."""
        return Decimal(amount).scaleb(-self.decimals)


@dataclass(frozen=True, slots=True)
class TokenAccount:
    """A holding account: `owner`'s balance of `mint`, in base units."""
    address: Pubkey
    mint: Pubkey
    owner: Pubkey
    amount: int = 0

    def __repr__(self) -> str:
        return f"TokenAccount({self.address!r}, owner={self.owner!r}, amount={self.amount})"


@dataclass(frozen=True, slots=True)
class TransferRecord:
    """Audit entry for an applied transfer or issuance."""
    sequence_number: int
    mint: Pubkey
    source: Optional[Pubkey]  # None for issuance
    dest: Pubkey
    amount: int
    authority: Optional[Pubkey]


@dataclass(frozen=True, slots=True)
class LedgerSnapshot:
    """Opaque restore point taken by TokenLedger.snapshot()."""
    accounts: Tuple[Tuple[Pubkey, TokenAccount], ...]
    supplies: Tuple[Tuple[Pubkey, int], ...]
    log_length: int
    next_sequence: int


@runtime_checkable
class TokenView(Protocol):
    """
    Read-only interface to token state.

    Programs receive the ledger typed as a TokenView, which declares their
    read-only intent. Balance changes go through the token program.
    """

    def get_mint(self, address: Pubkey) -> Mint:
        ...

    def has_account(self, address: Pubkey) -> bool:
        ...

    def get_account(self, address: Pubkey) -> TokenAccount:
        ...

    def get_balance(self, address: Pubkey) -> int:
        ...


# ============================================================================
# LEDGER
# ============================================================================

class TokenLedger:
    """
    Token balance ledger with full validation and an audit trail.

    Thread Safety:
        Not thread-safe. Each thread should maintain its own TokenLedger.

    Example:
        ledger = TokenLedger("main")
        ledger.register_mint(Mint(usdc, "USDC", 6))
        pool_account = ledger.create_associated_account(pool, usdc)
        ledger.mint_to(usdc, pool_account, 10_000_000)
    """

    def __init__(self, name: str, verbose: bool = True, test_mode: bool = False):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            verbose: Print registrations and transfers (default: True)
            test_mode: Allow set_balance() calls (default: False)
        """
        self.name = name
        self.verbose = verbose
        self._test_mode = test_mode
        self.mints: Dict[Pubkey, Mint] = {}
        self.accounts: Dict[Pubkey, TokenAccount] = {}
        self.supplies: Dict[Pubkey, int] = {}
        self.transfer_log: List[TransferRecord] = []
        self._next_sequence: int = 0

    # ========================================================================
    # TokenView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    def get_mint(self, address: Pubkey) -> Mint:
        if address not in self.mints:
            raise AccountNotFound(f"Mint {address!r} not registered")
        return self.mints[address]

    def has_account(self, address: Pubkey) -> bool:
        return address in self.accounts

    def get_account(self, address: Pubkey) -> TokenAccount:
        if address not in self.accounts:
            raise AccountNotFound(f"Holding account {address!r} does not exist")
        return self.accounts[address]

    def get_balance(self, address: Pubkey) -> int:
        """
        Balance of a holding account in base units.

        Raises:
            AccountNotFound: If the account does not exist
        """
        return self.get_account(address).amount

    def total_supply(self, mint: Pubkey) -> int:
        """Sum of all holding-account balances for a mint."""
        self.get_mint(mint)
        return sum(acct.amount for acct in self.accounts.values() if acct.mint == mint)

    def verify_conservation(self, expected_supplies: Optional[Dict[Pubkey, int]] = None) -> Dict[str, object]:
        """
        Verify that balances add up to the issued supply for every mint.

        Transfers never create or destroy value, so the sum of balances must
        equal everything issued through mint_to().

        Args:
            expected_supplies: Optional mint -> expected total; also checked when given.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all checks hold
            - 'supplies': Dict[Pubkey, int] - current balance sum per mint
            - 'discrepancies': List[Dict] - mint, expected, actual
        """
        supplies: Dict[Pubkey, int] = {}
        discrepancies = []
        for mint in self.mints:
            actual = self.total_supply(mint)
            supplies[mint] = actual
            issued = self.supplies.get(mint, 0)
            if actual != issued:
                discrepancies.append({'mint': mint, 'expected': issued, 'actual': actual})
            if expected_supplies and mint in expected_supplies and expected_supplies[mint] != actual:
                discrepancies.append({'mint': mint, 'expected': expected_supplies[mint], 'actual': actual})
        return {
            'valid': not discrepancies,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_mint(self, mint: Mint) -> None:
        """
        Register a new asset.

        Raises:
            ValueError: If the mint is already registered
        """
        if mint.address in self.mints:
            raise ValueError(f"Mint {mint.symbol} already registered")
        self.mints[mint.address] = mint
        self.supplies[mint.address] = 0
        if self.verbose:
            print(f"Registered mint: {mint.symbol} ({mint.decimals} decimals) {mint.address}")

    def open_account(self, address: Pubkey, mint: Pubkey, owner: Pubkey) -> TokenAccount:
        """
        Open an empty holding account at an explicit address.

        Raises:
            AccountNotFound: If the mint is not registered
            ValueError: If an account already exists at the address
        """
        self.get_mint(mint)
        if address in self.accounts:
            raise ValueError(f"Holding account {address!r} already exists")
        account = TokenAccount(address=address, mint=mint, owner=owner)
        self.accounts[address] = account
        return account

    def create_associated_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        """
        Create the associated holding account of (owner, mint) if missing.

        Idempotent: an existing associated account is returned unchanged.

        Returns:
            The associated account address
        """
        address = get_associated_token_address(owner, mint)
        existing = self.accounts.get(address)
        if existing is not None:
            if existing.mint != mint or existing.owner != owner:
                raise LedgerError(f"Account {address!r} is not the associated account of {owner!r}")
            return address
        self.open_account(address, mint, owner)
        if self.verbose:
            print(f"Created associated account {address!r} for owner {owner!r}")
        return address

    def set_balance(self, address: Pubkey, amount: int) -> None:
        """
        Set a holding account's balance directly.

        WARNING: Bypasses supply accounting; only available in test mode.
        Issued supply is adjusted so verify_conservation() still holds.

        Raises:
            LedgerError: If called when test_mode is False
        """
        if not self._test_mode:
            raise LedgerError(
                "set_balance() is disabled in production mode. "
                "Use mint_to() and transfer() to modify balances. "
                "Set test_mode=True when creating TokenLedger for testing."
            )
        account = self.get_account(address)
        if not 0 <= amount <= U64_MAX:
            raise BalanceConstraintViolation(f"balance {amount} outside u64 range")
        self.supplies[account.mint] += amount - account.amount
        self.accounts[address] = replace(account, amount=amount)

    # ========================================================================
    # TRANSFERS (Mutating)
    # ========================================================================

    def _record(self, mint: Pubkey, source: Optional[Pubkey], dest: Pubkey,
                amount: int, authority: Optional[Pubkey]) -> None:
        self.transfer_log.append(TransferRecord(
            sequence_number=self._next_sequence,
            mint=mint,
            source=source,
            dest=dest,
            amount=amount,
            authority=authority,
        ))
        self._next_sequence += 1

    @staticmethod
    def _check_amount(amount: int) -> None:
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise TransferRuleViolation(f"amount must be int, got {type(amount)}")
        if amount <= 0:
            raise TransferRuleViolation(f"amount must be positive, got {amount}")
        if amount > U64_MAX:
            raise TransferRuleViolation(f"amount {amount} does not fit in u64")

    def mint_to(self, mint: Pubkey, dest: Pubkey, amount: int) -> None:
        """
        Issue new units of a mint into a holding account.

        Raises:
            MintMismatch: If the account holds a different mint
            BalanceConstraintViolation: If supply or balance would exceed u64
        """
        self._check_amount(amount)
        self.get_mint(mint)
        account = self.get_account(dest)
        if account.mint != mint:
            raise MintMismatch(f"Account {dest!r} does not hold mint {mint!r}")
        if self.supplies[mint] + amount > U64_MAX:
            raise BalanceConstraintViolation(f"supply of {mint!r} would exceed u64")
        self.supplies[mint] += amount
        self.accounts[dest] = replace(account, amount=account.amount + amount)
        self._record(mint, None, dest, amount, None)
        if self.verbose:
            print(f"Minted {amount} {self.mints[mint].symbol} to {dest!r}")

    def transfer(
        self,
        source: Pubkey,
        dest: Pubkey,
        amount: int,
        authority: Pubkey,
        signers: FrozenSet[Pubkey] = frozenset(),
    ) -> None:
        """
        Move `amount` base units from source to dest.

        The authority must own the source account and must be among the
        signers. Program-derived authorities reach this set through
        InvocationContext.invoke(), which re-derives them from signer seeds.

        Args:
            source: Holding account debited
            dest: Holding account credited
            amount: Base units, 0 < amount <= u64 max
            authority: Claimed owner of the source account
            signers: Keys that authorized the calling instruction

        Raises:
            TransferRuleViolation: If amount is not a positive u64
            AccountNotFound: If either account does not exist
            MintMismatch: If the accounts hold different mints
            InvalidAuthority: If the authority is not the owner or is not authorized
            InsufficientFunds: If the source holds less than amount
            BalanceConstraintViolation: If the destination balance would exceed u64
        """
        self._check_amount(amount)
        src = self.get_account(source)
        dst = self.get_account(dest)
        if src.mint != dst.mint:
            raise MintMismatch(f"Cannot move {src.mint!r} into an account holding {dst.mint!r}")
        if authority != src.owner:
            raise InvalidAuthority(f"{authority!r} does not own {source!r}")
        if authority not in signers:
            raise InvalidAuthority(f"{authority!r} did not authorize the transfer")
        if src.amount < amount:
            raise InsufficientFunds(
                f"{source!r} holds {src.amount}, transfer needs {amount}"
            )

        if source != dest:
            if dst.amount + amount > U64_MAX:
                raise BalanceConstraintViolation(f"{dest!r} balance would exceed u64")
            self.accounts[source] = replace(src, amount=src.amount - amount)
            self.accounts[dest] = replace(dst, amount=dst.amount + amount)
        self._record(src.mint, source, dest, amount, authority)
        if self.verbose:
            print(f"Transfer {amount} {self.mints[src.mint].symbol}: {source!r} -> {dest!r}")

    # ========================================================================
    # SNAPSHOTS
    # ========================================================================

    def snapshot(self) -> LedgerSnapshot:
        """
        Capture balances, supplies and log position.

        TokenAccount is immutable, so copying the dict entries is enough.
        Mint registrations are not captured; they never change inside a batch.
        """
        return LedgerSnapshot(
            accounts=tuple(self.accounts.items()),
            supplies=tuple(self.supplies.items()),
            log_length=len(self.transfer_log),
            next_sequence=self._next_sequence,
        )

    def restore(self, snapshot: LedgerSnapshot) -> None:
        """Discard everything since the snapshot was taken."""
        self.accounts = dict(snapshot.accounts)
        self.supplies = dict(snapshot.supplies)
        del self.transfer_log[snapshot.log_length:]
        self._next_sequence = snapshot.next_sequence

    def clone(self) -> TokenLedger:
        """
        Create a fully independent copy of this ledger.

        Returns:
            A new TokenLedger with identical mints, accounts, supplies and log
        """
        cloned = TokenLedger.__new__(TokenLedger)
        cloned.name = self.name
        cloned.verbose = self.verbose
        cloned._test_mode = self._test_mode
        cloned.mints = dict(self.mints)
        cloned.accounts = dict(self.accounts)
        cloned.supplies = dict(self.supplies)
        cloned.transfer_log = list(self.transfer_log)
        cloned._next_sequence = self._next_sequence
        return cloned

    def balances(self) -> Dict[Pubkey, int]:
        """All holding-account balances keyed by account address."""
        return {address: acct.amount for address, acct in self.accounts.items()}
