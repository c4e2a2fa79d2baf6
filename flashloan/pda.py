"""
pda.py - Program-Derived Addresses

A program-derived address (PDA) is an identity a program controls without
any private key. It is the sha256 hash of a list of seeds, the owning
program id and a fixed marker, and it is only valid if the hash does NOT
decode to a point on the ed25519 curve (so no keypair can exist for it).

=== DERIVATION ===

    create_program_address(seeds, program_id)
        = sha256(seed_0 || ... || seed_n || program_id || "ProgramDerivedAddress")
        (rejected if on curve)

    find_program_address(seeds, program_id) -> (address, bump)
        tries seeds + [bump] for bump = 255, 254, ... 0; first off-curve wins

=== CAPABILITY TOKEN ===

SignerSeeds bundles the seeds and bump. A program hands it to a nested
invocation, which re-derives the address under the invoking program's id
and signs for it only if it matches. Nothing else can authorize a PDA.
"""

from __future__ import annotations
from dataclasses import dataclass
import hashlib
from typing import Sequence, Tuple

from .core import (
    Pubkey, InvalidSeeds,
    PUBKEY_BYTES, TOKEN_PROGRAM_ID, ASSOCIATED_TOKEN_PROGRAM_ID,
)


# =============================================================================
# CONSTANTS
# =============================================================================

MAX_SEEDS = 16
MAX_SEED_LEN = 32
PDA_MARKER = b"ProgramDerivedAddress"

# ed25519 field prime and curve constant d = -121665/121666
_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P


# =============================================================================
# CURVE CHECK
# =============================================================================

def is_on_curve(point: bytes) -> bool:
    """
    Return True if 32 bytes decompress to a point on the ed25519 curve.

    Decompression recovers x from y via x^2 = (y^2 - 1) / (d*y^2 + 1).
    The encoding is a curve point exactly when that ratio is a square
    mod p (zero included). The sign bit never makes a valid y invalid.
    """
    if len(point) != PUBKEY_BYTES:
        raise ValueError(f"curve point must be {PUBKEY_BYTES} bytes, got {len(point)}")
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    y2 = (y * y) % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    if v == 0:
        return u == 0
    x2 = (u * pow(v, _P - 2, _P)) % _P
    if x2 == 0:
        return True
    # Euler's criterion
    return pow(x2, (_P - 1) // 2, _P) == 1


# =============================================================================
# DERIVATION
# =============================================================================

def _validate_seeds(seeds: Sequence[bytes], reserve: int = 0) -> None:
    if len(seeds) + reserve > MAX_SEEDS:
        raise InvalidSeeds(f"at most {MAX_SEEDS} seeds allowed, got {len(seeds) + reserve}")
    for seed in seeds:
        if len(seed) > MAX_SEED_LEN:
            raise InvalidSeeds(f"seed longer than {MAX_SEED_LEN} bytes: {len(seed)}")


def create_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Pubkey:
    """
    Derive the address for an exact seed list.

    Raises:
        InvalidSeeds: If the seed list is too long, a seed is too long,
                      or the hash lands on the curve.
    """
    _validate_seeds(seeds)
    hasher = hashlib.sha256()
    for seed in seeds:
        hasher.update(bytes(seed))
    hasher.update(bytes(program_id))
    hasher.update(PDA_MARKER)
    digest = hasher.digest()
    if is_on_curve(digest):
        raise InvalidSeeds("derived address lies on the ed25519 curve")
    return Pubkey(digest)


def find_program_address(seeds: Sequence[bytes], program_id: Pubkey) -> Tuple[Pubkey, int]:
    """
    Search bumps from 255 down and return the first valid (address, bump).

    The result depends only on the seeds and program id, so every caller
    that repeats the search gets the same pair.
    """
    _validate_seeds(seeds, reserve=1)
    for bump in range(255, -1, -1):
        try:
            return create_program_address([*seeds, bytes([bump])], program_id), bump
        except InvalidSeeds:
            continue
    raise InvalidSeeds("no viable bump seed found")


@dataclass(frozen=True, slots=True)
class SignerSeeds:
    """
    Capability token authorizing a program-derived address.

    Attributes:
        seeds: The label seeds, without the bump.
        bump: The bump that makes the derivation land off-curve.
    """
    seeds: Tuple[bytes, ...]
    bump: int

    def __post_init__(self):
        object.__setattr__(self, 'seeds', tuple(bytes(s) for s in self.seeds))
        if not 0 <= self.bump <= 255:
            raise ValueError(f"bump must be in [0, 255], got {self.bump}")

    @classmethod
    def derive(cls, seeds: Sequence[bytes], program_id: Pubkey) -> SignerSeeds:
        _, bump = find_program_address(seeds, program_id)
        return cls(tuple(seeds), bump)

    def address_for(self, program_id: Pubkey) -> Pubkey:
        """Re-derive the authorized address under a program id."""
        return create_program_address([*self.seeds, bytes([self.bump])], program_id)


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """The canonical holding account of `owner` for `mint`."""
    address, _ = find_program_address(
        [bytes(owner), bytes(TOKEN_PROGRAM_ID), bytes(mint)],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address
