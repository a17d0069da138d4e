# services/formatting.py
# Display helpers for Indonesian chat messages.

from datetime import datetime, timedelta, timezone
from typing import Optional

# Western Indonesia Time, no DST
WIB = timezone(timedelta(hours=7), "WIB")


def format_rupiah(amount: int) -> str:
    """150000 -> 'Rp 150.000' (id-ID digit grouping)."""
    sign = "-" if amount < 0 else ""
    grouped = f"{abs(int(amount)):,}".replace(",", ".")
    return f"Rp {sign}{grouped}"


def format_timestamp(value: Optional[datetime] = None) -> str:
    """Render as DD/MM/YYYY HH:MM:SS in WIB."""
    value = value or datetime.now(timezone.utc)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(WIB).strftime("%d/%m/%Y %H:%M:%S")


__all__ = ["WIB", "format_rupiah", "format_timestamp"]
