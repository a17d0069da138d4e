# schemas/__init__.py
from schemas.errors import (
    GENERIC_FAILURE_MESSAGE,
    TopupError,
    InvalidTransition,
    AdmissionError,
    InvalidIdentity,
    AmountOutOfRange,
    UnknownDriver,
    DuplicatePending,
    RateLimited,
    GatewayError,
    GatewayTimeout,
    SignatureError,
    MalformedWebhook,
    DirectoryError,
    DirectoryTimeout,
    ReconcileError,
    OrderNotFound,
    AlreadyFinalized,
    DirectoryWriteFailure,
)
from schemas.topup import (
    OrderStatus,
    TERMINAL_STATUSES,
    GatewayEventKind,
    DriverRecord,
    PaymentHandle,
    GatewayEvent,
    TopupOrder,
    OrderTicket,
    Transaction,
    FinalizedOrder,
    ReconcileOutcome,
    utcnow,
)

__all__ = [
    # Errors
    "GENERIC_FAILURE_MESSAGE",
    "TopupError",
    "InvalidTransition",
    "AdmissionError",
    "InvalidIdentity",
    "AmountOutOfRange",
    "UnknownDriver",
    "DuplicatePending",
    "RateLimited",
    "GatewayError",
    "GatewayTimeout",
    "SignatureError",
    "MalformedWebhook",
    "DirectoryError",
    "DirectoryTimeout",
    "ReconcileError",
    "OrderNotFound",
    "AlreadyFinalized",
    "DirectoryWriteFailure",
    # Models
    "OrderStatus",
    "TERMINAL_STATUSES",
    "GatewayEventKind",
    "DriverRecord",
    "PaymentHandle",
    "GatewayEvent",
    "TopupOrder",
    "OrderTicket",
    "Transaction",
    "FinalizedOrder",
    "ReconcileOutcome",
    "utcnow",
]
