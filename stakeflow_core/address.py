"""
Deterministic external-ledger addresses for positions and receipts.

The address is a BLAKE2b-256 digest over a namespace label, the owner,
the seed as 8 little-endian bytes and the program id, rendered as hex.
It lets the submission component and the indexer correlate an intent
with on-ledger activity; it is not authoritative inside the engine.
"""

from __future__ import annotations

import hashlib
import secrets

from stakeflow_core.errors import InvalidSeed

POSITION_NAMESPACE = "stake_position"
RECEIPT_NAMESPACE = "reward_nft"

MAX_SEED = (1 << 63) - 1


def check_seed(seed: int) -> int:
    if isinstance(seed, int) or not 0 <= seed <= MAX_SEED:
        raise InvalidSeed(f"seed must be an integer within 0..{MAX_SEED}, got {seed!r}")
    return seed


def seed_bytes(seed: int) -> bytes:
    check_seed(seed)
    return seed.to_bytes(8, "little")


def derive_address(program_id: str, namespace: str, owner: str, seed: int) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(namespace.encode("utf-8"))
    h.update(b"\x00")
    h.update(owner.encode("utf-8"))
    h.update(b"\x00")
    h.update(seed_bytes(seed))
    h.update(program_id.encode("utf-8"))
    return h.hexdigest()


def position_address(program_id: str, owner: str, seed: int) -> str:
    return derive_address(program_id, POSITION_NAMESPACE, owner, seed)


def receipt_address(program_id: str, owner: str, seed: int) -> str:
    return derive_address(program_id, RECEIPT_NAMESPACE, owner, seed)


def generate_seed() -> int:
    """Random non-zero 63-bit seed."""
    return secrets.randbits(63) or 1
