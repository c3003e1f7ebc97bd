"""
Sat Amount Validation

All balances, deductions and invoice amounts are plain Python ints counted
in sats. Values are checked once at the boundary and trusted afterwards.
"""

from typing import Any

from .errors import ValidationError

# Largest value a BIGINT column holds
MAX_SATS = 2**63 - 1


def validate_amount(value: Any, field: str = "amount") -> int:
    """
    Return ``value`` if it is a positive integral sat amount.

    Booleans, floats (even integral ones), numeric strings and values
    outside 1..MAX_SATS raise ValidationError.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer number of sats, got {type(value).__name__}")
    if value <= 0:
        raise ValidationError(f"{field} must be positive, got {value}")
    if value > MAX_SATS:
        raise ValidationError(f"{field} exceeds the maximum of {MAX_SATS} sats")
    return value


def validate_action(action: Any) -> str:
    """Return the stripped action tag; it must be a non-empty string."""
    if not isinstance(action, str) or not action.strip():
        raise ValidationError("action must be a non-empty string")
    action = action.strip()
    if len(action) > 100:
        raise ValidationError("action must be at most 100 characters")
    return action
