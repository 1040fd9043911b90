"""
Provably fair draws using commit-reveal seeds.

At round start the server seed is generated and only its SHA-256 hash is
published. At resolution the outcome is HMAC-SHA512(server_seed,
"client_seed:nonce"), first 64 bits, reduced modulo the outcome space.
After the round the seed is revealed so anyone can recompute both the
hash and the outcome.
"""
import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from typing import Union

from database.models import RoundAuditRecord, GameVariant

logger = logging.getLogger(__name__)

SERVER_SEED_BYTES = 32  # 64 hex characters
DRAW_HEX_CHARS = 16     # 64 bits of the digest feed the modulo


@dataclass(frozen=True)
class SeedCommitment:
    """A server seed and the hash published for it."""
    server_seed: str
    hashed_server_seed: str


def generate_server_seed() -> str:
    """Generate a high-entropy hex server seed."""
    return secrets.token_hex(SERVER_SEED_BYTES)


def hash_server_seed(server_seed: str) -> str:
    """One-way commitment to a server seed."""
    if not server_seed or not isinstance(server_seed, str):
        raise ValueError("Invalid server seed provided for hashing")
    return hashlib.sha256(server_seed.encode()).hexdigest()


def commit() -> SeedCommitment:
    """Create a fresh seed; publish `hashed_server_seed`, withhold `server_seed`."""
    server_seed = generate_server_seed()
    return SeedCommitment(server_seed=server_seed, hashed_server_seed=hash_server_seed(server_seed))


def draw(server_seed: str, client_seed: str, nonce: Union[int, str], outcome_space_size: int) -> int:
    """Deterministic outcome in [0, outcome_space_size).

    Args:
        server_seed: Secret seed (HMAC key)
        client_seed: Player-influenced seed
        nonce: Round number
        outcome_space_size: Number of possible outcomes

    Returns:
        Integer outcome
    """
    if not isinstance(server_seed, str) or not isinstance(client_seed, str):
        raise ValueError("Seeds must be strings")
    if isinstance(outcome_space_size, bool) or not isinstance(outcome_space_size, int) or outcome_space_size <= 0:
        raise ValueError("Outcome space size must be a positive integer")

    message = f"{client_seed}:{nonce}".encode()
    digest = hmac.new(server_seed.encode(), message, hashlib.sha512).hexdigest()

    # 64 bits against outcome spaces of ~1e6 leaves a modulo bias around 1e-13
    value = int(digest[:DRAW_HEX_CHARS], 16)
    return value % outcome_space_size


def verify(server_seed: str, client_seed: str, nonce: Union[int, str],
           outcome_space_size: int, claimed_outcome: int) -> bool:
    """Recompute a draw and compare with the claimed outcome."""
    if isinstance(claimed_outcome, bool) or not isinstance(claimed_outcome, int) or claimed_outcome < 0:
        return False
    return draw(server_seed, client_seed, nonce, outcome_space_size) == claimed_outcome


def verify_commitment(server_seed: str, hashed_server_seed: str) -> bool:
    """Check that a revealed seed matches the hash published at round start."""
    return hmac.compare_digest(hash_server_seed(server_seed), hashed_server_seed)


def verify_round(record: RoundAuditRecord) -> bool:
    """Verify a finished round from its audit record.

    Allows anyone to verify the round was fair: the revealed seed must hash to
    the published commitment, and (for drawing variants) must reproduce the
    recorded outcome and winning field.

    Args:
        record: Audit record of a finished round

    Returns:
        True if the round checks out, False otherwise
    """
    if not record.server_seed or not verify_commitment(record.server_seed, record.hashed_server_seed):
        logger.warning(f"Seed commitment mismatch for round {record.round_id}")
        return False

    # Ascending-bid rounds have no draw; the commitment is all there is to check
    if record.outcome_space_size is None:
        return record.outcome is None

    if record.outcome is None:
        return False

    if not verify(record.server_seed, record.client_seed, record.nonce,
                  record.outcome_space_size, record.outcome):
        logger.warning(f"Outcome mismatch for round {record.round_id}")
        return False

    if record.variant == GameVariant.FIELD_LOTTERY:
        return record.winning_field == record.outcome + 1

    return True
