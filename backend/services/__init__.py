# services/__init__.py
"""
Admission checks, driver directory, notifications.
"""

from services.validation import (
    MIN_AMOUNT,
    MAX_AMOUNT,
    normalize_identity,
    normalize_amount,
    validate,
)
from services.rate_limiter import RateLimitRecord, RateLimiter
from services.formatting import format_rupiah, format_timestamp
from services.driver_directory import (
    IDriverDirectory,
    InMemoryDriverDirectory,
    GoogleSheetsDriverDirectory,
)
from services.notifier import (
    IMessageTransport,
    InMemoryMessageTransport,
    HttpMessageTransport,
    Notifier,
)

__all__ = [
    "MIN_AMOUNT",
    "MAX_AMOUNT",
    "normalize_identity",
    "normalize_amount",
    "validate",
    "RateLimitRecord",
    "RateLimiter",
    "format_rupiah",
    "format_timestamp",
    "IDriverDirectory",
    "InMemoryDriverDirectory",
    "GoogleSheetsDriverDirectory",
    "IMessageTransport",
    "InMemoryMessageTransport",
    "HttpMessageTransport",
    "Notifier",
]
