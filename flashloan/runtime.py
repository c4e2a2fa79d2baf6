"""
runtime.py - Atomic batch host

The Runtime executes a Batch of calls strictly in order and all-or-nothing:
it snapshots the TokenLedger before the first call and restores it if any
call raises a LedgerError, so effects of earlier calls in a failed batch are
never observable.

Key responsibilities:
    - Program registry (dispatch by program id)
    - Signature check: every account a call flags as signer must be signed
    - Per-call InvocationContext with the serialized instructions view
    - Nested invocation with program-derived signers (signer seeds)
    - Log collection, batch log and duplicate-batch detection
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
import hashlib
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence, Set, Tuple

from .core import (
    Pubkey, AccountMeta, Call,
    LedgerError, AccountConstraintViolation, MissingRequiredSignature,
    UnknownProgram, CallDepthExceeded, TransferRuleViolation,
    BUILTIN_PROGRAM_IDS, INSTRUCTIONS_SYSVAR_ID, TOKEN_PROGRAM_ID,
    decode_u64, encode_u64, signer_keys,
)
from .introspection import BatchIntrospector, serialize_calls
from .ledger import TokenLedger, TokenView
from .pda import SignerSeeds


# ============================================================================
# CONSTANTS
# ============================================================================

# Top-level calls run at depth 1; each nested invoke adds one.
MAX_CALL_DEPTH = 4

# Token program instruction index for a plain transfer.
TOKEN_TRANSFER = 3


def _short(pubkey: Pubkey) -> str:
    return pubkey.raw.hex()[:12]


# ============================================================================
# BATCH
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a batch execution attempt.

    APPLIED: Every call succeeded and all effects were kept.
    ALREADY_APPLIED: A batch with the same batch_id was processed before.
    REJECTED: Some call failed; every effect of the batch was discarded.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


def _compute_batch_id(calls: Tuple[Call, ...], signers: FrozenSet[Pubkey], nonce: int) -> str:
    """Content hash of calls, signers and nonce; identical batches share an id."""
    hasher = hashlib.sha256(serialize_calls(calls))
    for key in sorted(bytes(k) for k in signers):
        hasher.update(key)
    hasher.update(nonce.to_bytes(8, "little"))
    return hasher.hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class Batch:
    """
    An ordered, atomic group of calls.

    Attributes:
        calls: Calls in execution order.
        signers: Keys whose signatures accompany the batch.
        nonce: Distinguishes otherwise identical batches.
        batch_id: Content hash (auto-computed).
    """
    calls: Tuple[Call, ...]
    signers: FrozenSet[Pubkey] = frozenset()
    nonce: int = 0
    batch_id: str = field(default="")

    def __post_init__(self):
        calls = tuple(self.calls)
        for call in calls:
            if not isinstance(call, Call):
                raise ValueError(f"Batch entries must be Call, got {type(call)}")
        if not 0 <= self.nonce < 2 ** 64:
            raise ValueError(f"nonce must fit in u64, got {self.nonce}")
        object.__setattr__(self, 'calls', calls)
        object.__setattr__(self, 'signers', frozenset(self.signers))
        if not self.batch_id:
            object.__setattr__(self, 'batch_id', _compute_batch_id(calls, self.signers, self.nonce))

    def __len__(self) -> int:
        return len(self.calls)

    def __repr__(self) -> str:
        return f"Batch({self.batch_id}, {len(self.calls)} calls, {len(self.signers)} signers)"


def build_batch(
    calls: Sequence[Call],
    signers: Optional[Iterable[Pubkey]] = None,
    nonce: int = 0,
) -> Batch:
    """
    Build a Batch from calls.

    Args:
        calls: Calls in execution order
        signers: Keys that sign the batch; defaults to every key any call flags as signer
        nonce: Distinguishes repeated submissions of the same calls

    Returns:
        A Batch ready for Runtime.execute()
    """
    calls = tuple(calls)
    if signers is None:
        signers = frozenset().union(*(signer_keys(c.accounts) for c in calls))
    return Batch(calls=calls, signers=frozenset(signers), nonce=nonce)


@dataclass(frozen=True, slots=True)
class BatchReceipt:
    """
    What a caller learns about a submitted batch.

    Attributes:
        result: APPLIED, ALREADY_APPLIED or REJECTED
        batch_id: Id of the submitted batch
        error: The first violated condition (REJECTED only)
        failed_call: Position of the call that raised (REJECTED only)
        logs: Program log lines, in order
    """
    result: ExecuteResult
    batch_id: str
    error: Optional[LedgerError] = None
    failed_call: Optional[int] = None
    logs: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.result == ExecuteResult.APPLIED

    def __repr__(self) -> str:
        w = 80
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            f"┌{bar}┐",
            f"│{pad(' Batch: ' + self.batch_id)}│",
            f"├{bar}┤",
            f"│{pad('   result : ' + self.result.value)}│",
        ]
        if self.error is not None:
            lines.append(f"│{pad('   error  : ' + str(self.error))}│")
            lines.append(f"│{pad('   call   : ' + str(self.failed_call))}│")
        if self.logs:
            lines.append(f"├{bar}┤")
            for line in self.logs:
                lines.append(f"│{pad('   ' + line)}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class BatchRecord:
    """An applied batch in the runtime's log."""
    batch: Batch
    exec_id: str
    sequence_number: int
    logs: Tuple[str, ...]


# ============================================================================
# PROGRAMS
# ============================================================================

class Program(Protocol):
    """
    Protocol for anything the runtime can dispatch a call to.

    process() receives an InvocationContext and either returns normally or
    raises a LedgerError, which aborts the whole batch.
    """

    @property
    def program_id(self) -> Pubkey:
        ...

    def process(self, ctx: InvocationContext) -> None:
        ...


class InvocationContext:
    """
    Everything a program may see and do while handling one call.

    Reads go through `view` (read-only ledger) and introspector(); the only
    writes available are token-program transfers via invoke() and
    associated-account provisioning.
    """

    def __init__(
        self,
        runtime: Runtime,
        call: Call,
        instructions_data: bytes,
        signers: FrozenSet[Pubkey],
        depth: int,
        logs: List[str],
    ):
        self._runtime = runtime
        self.call = call
        self._instructions_data = instructions_data
        self.signers = signers
        self.depth = depth
        self._logs = logs

    @property
    def program_id(self) -> Pubkey:
        return self.call.program_id

    @property
    def accounts(self) -> Tuple[AccountMeta, ...]:
        return self.call.accounts

    @property
    def data(self) -> bytes:
        return self.call.data

    @property
    def view(self) -> TokenView:
        return self._runtime.ledger

    def account(self, position: int) -> AccountMeta:
        """
        Account reference at a position of this call.

        Raises:
            AccountConstraintViolation: If the call passed fewer accounts
        """
        if not 0 <= position < len(self.call.accounts):
            raise AccountConstraintViolation(
                f"not enough account keys: need position {position}, got {len(self.call.accounts)}"
            )
        return self.call.accounts[position]

    def is_signer(self, pubkey: Pubkey) -> bool:
        return pubkey in self.signers

    def instructions_data(self, address: Pubkey) -> bytes:
        """
        Raw instructions view, served only under its well-known address.

        Raises:
            AccountConstraintViolation: If address is not the instructions view
                                        or the call did not pass it
        """
        if address != INSTRUCTIONS_SYSVAR_ID:
            raise AccountConstraintViolation(f"{address!r} is not the instructions view")
        if not any(meta.pubkey == address for meta in self.call.accounts):
            raise AccountConstraintViolation("instructions view not passed to this call")
        return self._instructions_data

    def introspector(self) -> BatchIntrospector:
        return BatchIntrospector(self.instructions_data(INSTRUCTIONS_SYSVAR_ID))

    def create_associated_account(self, owner: Pubkey, mint: Pubkey) -> Pubkey:
        """Provision the associated holding account of (owner, mint) if missing."""
        return self._runtime.ledger.create_associated_account(owner, mint)

    def transfer(self, source: Pubkey, dest: Pubkey, amount: int, authority: Pubkey) -> None:
        """Apply a transfer authorized by this call's signers. Reserved for the token program."""
        if self.program_id != TOKEN_PROGRAM_ID:
            raise AccountConstraintViolation("only the token program moves balances directly")
        self._runtime.ledger.transfer(source, dest, amount, authority, signers=self.signers)

    def log(self, message: str) -> None:
        self._logs.append(f"Program log: {message}")

    def invoke(self, call: Call, signer_seeds: Sequence[SignerSeeds] = ()) -> None:
        """
        Invoke another program from inside this call.

        Signer flags on the nested call must be backed either by this call's
        own signers or by an address derived from `signer_seeds` under this
        program's id. The nested call sees the same instructions view, so its
        current index is still the top-level position.

        Raises:
            MissingRequiredSignature: If a signer flag is not backed
            CallDepthExceeded: If nesting goes past MAX_CALL_DEPTH
        """
        derived = frozenset(seeds.address_for(self.program_id) for seeds in signer_seeds)
        allowed = self.signers | derived
        nested_signers = signer_keys(call.accounts)
        missing = nested_signers - allowed
        if missing:
            raise MissingRequiredSignature(
                f"nested call flags unsigned account {next(iter(missing))!r}"
            )
        if self.depth + 1 > MAX_CALL_DEPTH:
            raise CallDepthExceeded(f"invoke depth {self.depth + 1} exceeds {MAX_CALL_DEPTH}")
        nested = InvocationContext(
            self._runtime, call, self._instructions_data, nested_signers,
            self.depth + 1, self._logs,
        )
        self._runtime._dispatch(nested)


class TokenProgram:
    """
    Built-in token program: the transfer primitive as a callable program.

    Instruction: data = [3] + u64 amount; accounts = [source, dest, authority(signer)].
    """

    @property
    def program_id(self) -> Pubkey:
        return TOKEN_PROGRAM_ID

    def process(self, ctx: InvocationContext) -> None:
        if len(ctx.data) != 9 or ctx.data[0] != TOKEN_TRANSFER:
            raise TransferRuleViolation("unsupported token instruction")
        amount = decode_u64(ctx.data, 1)
        source = ctx.account(0).pubkey
        dest = ctx.account(1).pubkey
        authority = ctx.account(2).pubkey
        ctx.transfer(source, dest, amount, authority)


def transfer_call(source: Pubkey, dest: Pubkey, authority: Pubkey, amount: int) -> Call:
    """Build a token-program transfer call."""
    return Call(
        TOKEN_PROGRAM_ID,
        (
            AccountMeta.writable(source),
            AccountMeta.writable(dest),
            AccountMeta.readonly(authority, signer=True),
        ),
        bytes([TOKEN_TRANSFER]) + encode_u64(amount),
    )


# ============================================================================
# RUNTIME
# ============================================================================

class Runtime:
    """
    Executes batches atomically against a TokenLedger.

    Thread Safety:
        Not thread-safe. Calls run strictly one after another, so a Runtime
        needs no locks of its own; share one per thread at most.

    Example:
        runtime = Runtime(TokenLedger("main"))
        runtime.register_program(FlashLoanProgram())
        receipt = runtime.execute(build_batch([borrow, repay]))
        assert receipt.ok
    """

    def __init__(self, ledger: Optional[TokenLedger] = None, name: str = "runtime", verbose: bool = True):
        """
        Create a runtime.

        Args:
            ledger: Ledger to execute against (default: a fresh TokenLedger)
            name: Runtime identifier, used in exec ids
            verbose: Print registrations and batch receipts (default: True)
        """
        self.name = name
        self.verbose = verbose
        self.ledger = ledger if ledger is not None else TokenLedger(name, verbose=verbose)
        self.programs: Dict[Pubkey, Program] = {TOKEN_PROGRAM_ID: TokenProgram()}
        self.batch_log: List[BatchRecord] = []
        self.seen_batch_ids: Set[str] = set()
        self._next_sequence: int = 0

    def register_program(self, program: Program) -> None:
        """
        Register a program under its id.

        Raises:
            ValueError: If the id is built in or already registered
        """
        program_id = program.program_id
        if program_id in BUILTIN_PROGRAM_IDS:
            raise ValueError(f"Program id {program_id!r} is reserved")
        if program_id in self.programs:
            raise ValueError(f"Program {program_id!r} already registered")
        self.programs[program_id] = program
        if self.verbose:
            print(f"Registered program: {type(program).__name__} {program_id!r}")

    def _dispatch(self, ctx: InvocationContext) -> None:
        program = self.programs.get(ctx.program_id)
        if program is None:
            raise UnknownProgram(f"no program registered for {ctx.program_id!r}")
        ctx._logs.append(f"Program {_short(ctx.program_id)} invoke [{ctx.depth}]")
        program.process(ctx)
        ctx._logs.append(f"Program {_short(ctx.program_id)} success")

    def execute(self, batch: Batch) -> BatchReceipt:
        """
        Execute a batch atomically.

        Calls run in order. Before each call the runtime checks that every
        account flagged as signer is among the batch signers, then serializes
        the batch with the call's position as current index. The first
        LedgerError restores the pre-batch ledger and rejects the batch. Any
        other exception also restores the pre-batch ledger, then propagates.

        Returns:
            BatchReceipt with APPLIED, ALREADY_APPLIED or REJECTED
        """
        if batch.batch_id in self.seen_batch_ids:
            if self.verbose:
                print(f"ALREADY_APPLIED: batch_id={batch.batch_id}")
            return BatchReceipt(ExecuteResult.ALREADY_APPLIED, batch.batch_id)

        logs: List[str] = []
        snapshot = self.ledger.snapshot()
        for index, call in enumerate(batch.calls):
            try:
                signers = signer_keys(call.accounts)
                missing = signers - batch.signers
                if missing:
                    raise MissingRequiredSignature(
                        f"call {index} flags unsigned account {next(iter(missing))!r}"
                    )
                view = serialize_calls(batch.calls, current_index=index)
                self._dispatch(InvocationContext(self, call, view, signers, 1, logs))
            except LedgerError as exc:
                self.ledger.restore(snapshot)
                logs.append(f"Program {_short(call.program_id)} failed: {exc}")
                receipt = BatchReceipt(
                    ExecuteResult.REJECTED, batch.batch_id,
                    error=exc, failed_call=index, logs=tuple(logs),
                )
                if self.verbose:
                    print(repr(receipt))
                return receipt
            except BaseException:
                self.ledger.restore(snapshot)
                raise

        sequence = self._next_sequence
        self._next_sequence += 1
        self.batch_log.append(BatchRecord(
            batch=batch,
            exec_id=f"exec:{self.name}:{sequence:012d}",
            sequence_number=sequence,
            logs=tuple(logs),
        ))
        self.seen_batch_ids.add(batch.batch_id)
        receipt = BatchReceipt(ExecuteResult.APPLIED, batch.batch_id, logs=tuple(logs))
        if self.verbose:
            print(repr(receipt))
        return receipt
