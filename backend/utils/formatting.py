"""
Formatting utilities for logs and operator output.
"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every stored datetime uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def format_coins(amount: int, currency: str = "coins") -> str:
    """Format an integer amount for display."""
    return f"{amount:,} {currency}"


def format_percentage(value: float) -> str:
    """Format a percent value (already scaled to 0-100) for display."""
    return f"{value:g}%"


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format timestamp for display."""
    if not dt:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_remaining(seconds: Optional[float]) -> str:
    """Format a countdown as M:SS."""
    if seconds is None:
        return "-"
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def truncate_seed(seed: Optional[str], start: int = 8, end: int = 4) -> str:
    """Truncate a seed or hash for log lines."""
    if not seed:
        return ""
    if len(seed) <= start + end:
        return seed
    return f"{seed[:start]}...{seed[-end:]}"
