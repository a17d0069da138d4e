# services/validation.py
# ============================================================================
# DRIVER TOP-UP BOT — ADMISSION VALIDATOR
# ============================================================================
# Pure checks on the (identity, amount) pair before anything else runs.
# No I/O, no shared state.
# ============================================================================

import re
from typing import Any, Tuple

from schemas.errors import AmountOutOfRange, InvalidIdentity
from services.formatting import format_rupiah

MIN_AMOUNT = 1_000
MAX_AMOUNT = 10_000_000

# Canonical identity: Indonesian mobile in international form without "+"
_IDENTITY_PATTERN = re.compile(r"^62\d{9,12}$")
_NON_DIGITS = re.compile(r"\D")


def normalize_identity(raw: Any) -> str:
    """
    Bring a phone number to canonical ``62xxxxxxxxx`` form.

    Accepts ``08xx``, ``8xx``, ``62xx`` and ``+62 xx-xx`` variants as well as
    chat-transport ids such as ``6281234567890@c.us``.

    Raises:
        InvalidIdentity: when the digits cannot form an Indonesian mobile number
    """
    if raw is None or isinstance(raw, bool):
        raise InvalidIdentity("identity missing")

    text = str(raw).split("@", 1)[0]
    digits = _NON_DIGITS.sub("", text)

    if digits.startswith("0"):
        digits = "62" + digits[1:]
    elif digits.startswith("8"):
        digits = "62" + digits

    if not _IDENTITY_PATTERN.match(digits):
        raise InvalidIdentity(f"identity not in national mobile format: {raw!r}")
    return digits


def normalize_amount(
    amount: Any,
    min_amount: int = MIN_AMOUNT,
    max_amount: int = MAX_AMOUNT,
) -> int:
    """Return the amount as int if it is a whole number inside the bounds."""
    # bool is an int subclass; "True" is not an amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise AmountOutOfRange(
            f"amount must be an integer, got {type(amount).__name__}",
            user_message=_range_message(min_amount, max_amount),
        )
    if amount < min_amount or amount > max_amount:
        raise AmountOutOfRange(
            f"amount {amount} outside [{min_amount}, {max_amount}]",
            user_message=_range_message(min_amount, max_amount),
        )
    return amount


def validate(
    identity: Any,
    amount: Any,
    min_amount: int = MIN_AMOUNT,
    max_amount: int = MAX_AMOUNT,
) -> Tuple[str, int]:
    """
    Validate a top-up request.

    Returns:
        (normalized_identity, amount)

    Raises:
        InvalidIdentity, AmountOutOfRange
    """
    normalized = normalize_identity(identity)
    return normalized, normalize_amount(amount, min_amount, max_amount)


def _range_message(min_amount: int, max_amount: int) -> str:
    return (
        "❌ Jumlah top-up tidak valid. "
        f"Minimum {format_rupiah(min_amount)}, maksimum {format_rupiah(max_amount)}"
    )


__all__ = [
    "MIN_AMOUNT",
    "MAX_AMOUNT",
    "normalize_identity",
    "normalize_amount",
    "validate",
]
