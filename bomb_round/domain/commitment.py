"""Seed & commitment generation for provably fair rounds.

The server seed stays secret until the round is terminal; its SHA-256 hash is
published when the session is created and never changes afterwards.
"""

import hashlib
import secrets
from dataclasses import dataclass

from uuid6 import uuid7

SERVER_SEED_BYTES = 32
CLIENT_SEED_BYTES = 16
NONCE_BASE_RANGE = 1_000_000


@dataclass(frozen=True)
class SeedCommitment:
    server_seed: str
    server_seed_hash: str
    client_seed: str
    nonce_base: int


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode()).hexdigest()


def generate_seeds(existing_client_seed: str | None = None) -> SeedCommitment:
    """Create a fresh commitment.

    Args:
        existing_client_seed (str | None): Client seed to keep across a reroll.
            A new random one is drawn when omitted.

    Returns:
        SeedCommitment: seeds, published hash and nonce base
    """
    server_seed = secrets.token_hex(SERVER_SEED_BYTES)
    client_seed = existing_client_seed or secrets.token_hex(CLIENT_SEED_BYTES)
    return SeedCommitment(
        server_seed=server_seed,
        server_seed_hash=sha256_hex(server_seed),
        client_seed=client_seed,
        nonce_base=secrets.randbelow(NONCE_BASE_RANGE),
    )


def commitment_matches(server_seed: str, server_seed_hash: str) -> bool:
    return secrets.compare_digest(sha256_hex(server_seed), server_seed_hash.lower())


def new_session_id() -> str:
    """Unsigned 64-bit session id as a decimal string.

    The escrow contract keys sessions by uint64, so we keep the high half of a
    UUIDv7 (millisecond timestamp + random bits) which stays time-ordered.
    """
    return str(uuid7().int >> 64)
