"""
Input validators shared by the earn and redeem paths.

Each validator returns the cleaned value or raises ValidationError. They run
before any store access.
"""
from typing import Optional

from .errors import ValidationError
from .models import EarnReason

MAX_ID_LENGTH = 128


def _is_clean_id(value) -> bool:
    # ids are used verbatim, so " a" and "a" would name different accounts
    return isinstance(value, str) and bool(value) and value == value.strip() and len(value) <= MAX_ID_LENGTH


def validate_account_id(value) -> str:
    if not _is_clean_id(value):
        raise ValidationError("Invalid user ID")
    return value


def validate_positive_int(value, message: str, maximum: Optional[int] = None) -> int:
    """
    Validate a points quantity.

    Args:
        value: Candidate integer
        message: Error text raised on failure
        maximum: Optional inclusive upper bound

    Raises:
        ValidationError: If value is not a positive int within bounds

    Returns:
        int: Validated value
    """
    # bool is an int subclass and must not count as 1 point
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(message)
    if value <= 0:
        raise ValidationError(message)
    if maximum is not None and value > maximum:
        raise ValidationError(message)
    return value


def validate_earn_reason(value) -> EarnReason:
    try:
        return EarnReason(value)
    except ValueError:
        raise ValidationError("Invalid points reason")


def validate_idempotency_key(value) -> Optional[str]:
    if value is None:
        return None
    if not _is_clean_id(value):
        raise ValidationError("Invalid idempotency key")
    return value
