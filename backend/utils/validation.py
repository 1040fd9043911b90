"""
Input validation utilities.
"""
from typing import Tuple

CLIENT_SEED_MIN_LENGTH = 1
CLIENT_SEED_MAX_LENGTH = 64


def is_valid_client_seed(seed: str) -> Tuple[bool, str]:
    """Validate a player-supplied client seed.

    Args:
        seed: Client seed to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(seed, str):
        return False, "Client seed must be a string"

    if len(seed) < CLIENT_SEED_MIN_LENGTH or len(seed) > CLIENT_SEED_MAX_LENGTH:
        return False, (
            f"Client seed must be {CLIENT_SEED_MIN_LENGTH}-{CLIENT_SEED_MAX_LENGTH} characters"
        )

    if not all(c.isprintable() for c in seed):
        return False, "Client seed contains non-printable characters"

    return True, ""


def is_valid_amount(amount: int) -> Tuple[bool, str]:
    """Validate a stake amount (whole currency units).

    Args:
        amount: Stake amount

    Returns:
        Tuple of (is_valid, error_message)
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        return False, "Amount must be a whole number"

    if amount <= 0:
        return False, "Amount must be greater than 0"

    return True, ""


def sanitize_display_name(name: str, max_length: int = 32) -> str:
    """Sanitize a display name for safe storage.

    Args:
        name: Display name to sanitize
        max_length: Maximum length

    Returns:
        Sanitized display name
    """
    if not name:
        return ""

    # Remove control characters and trim
    sanitized = ''.join(c for c in name if c.isprintable())
    sanitized = sanitized.strip()

    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length]

    return sanitized
