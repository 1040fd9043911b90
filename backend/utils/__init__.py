"""Utility modules for the round engine."""
from .encryption import generate_encryption_key, encrypt_secret, decrypt_secret
from .formatting import (
    utcnow,
    format_coins,
    format_percentage,
    format_timestamp,
    format_remaining,
    truncate_seed,
)
from .retry import RetryExhausted, call_with_retries, backoff_delay
from .validation import is_valid_client_seed, is_valid_amount, sanitize_display_name

__all__ = [
    "generate_encryption_key",
    "encrypt_secret",
    "decrypt_secret",
    "utcnow",
    "format_coins",
    "format_percentage",
    "format_timestamp",
    "format_remaining",
    "truncate_seed",
    "RetryExhausted",
    "call_with_retries",
    "backoff_delay",
    "is_valid_client_seed",
    "is_valid_amount",
    "sanitize_display_name",
]
