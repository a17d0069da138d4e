# schemas/topup.py
# ============================================================================
# DRIVER TOP-UP BOT — DOMAIN MODELS
# ============================================================================
# Orders, gateway events, driver records and the append-only transaction
# records. Amounts are whole rupiah held as int everywhere.
# ============================================================================

import secrets
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from schemas.errors import InvalidTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    CREATED = "created"
    AWAITING_PAYMENT = "awaiting_payment"
    PENDING = "pending"  # gateway says "still processing"
    SUCCEEDED = "succeeded"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    OrderStatus.SUCCEEDED,
    OrderStatus.EXPIRED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.AWAITING_PAYMENT},
    OrderStatus.AWAITING_PAYMENT: {
        OrderStatus.PENDING,
        OrderStatus.SUCCEEDED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PENDING: {
        OrderStatus.PENDING,
        OrderStatus.SUCCEEDED,
        OrderStatus.EXPIRED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    },
}


class GatewayEventKind(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    EXPIRED = "expired"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def target_status(self) -> OrderStatus:
        return {
            GatewayEventKind.SUCCESS: OrderStatus.SUCCEEDED,
            GatewayEventKind.PENDING: OrderStatus.PENDING,
            GatewayEventKind.EXPIRED: OrderStatus.EXPIRED,
            GatewayEventKind.FAILED: OrderStatus.FAILED,
            GatewayEventKind.CANCELLED: OrderStatus.CANCELLED,
        }[self]


# ============================================================================
# SECTION 2: DIRECTORY + GATEWAY TYPES
# ============================================================================

class DriverRecord(BaseModel):
    """One row of the driver directory."""
    identity: str
    name: str = "Driver"
    email: str = ""
    balance: int = 0
    driver_id: Optional[str] = None
    status: Optional[str] = None
    rating: Optional[int] = None
    last_update: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class PaymentHandle(BaseModel):
    """What the gateway hands back for a freshly created payment."""
    ref: str
    url: str
    qr: Optional[str] = None
    expires_at: datetime


class GatewayEvent(BaseModel):
    """Authenticated, normalized gateway notification."""
    order_id: str
    kind: GatewayEventKind
    amount: int
    gateway_ref: Optional[str] = None
    transaction_status: Optional[str] = None
    fraud_status: Optional[str] = None
    payment_type: Optional[str] = None
    received_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# SECTION 3: ORDER
# ============================================================================

class TopupOrder(BaseModel):
    """
    One in-flight top-up. Frozen: every change goes through transition_to()
    or with_updates(), which return a new instance for the table to store.
    """
    model_config = ConfigDict(frozen=True)

    order_id: str
    identity: str
    amount: int = Field(gt=0)
    gateway_payment_ref: Optional[str] = None
    payment_url: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: OrderStatus = OrderStatus.CREATED
    previous_status: Optional[OrderStatus] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    snapshot: DriverRecord
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    # Set when the gateway confirmed payment but the balance write failed
    credit_pending_amount: Optional[int] = None
    # Balances of the last attempted write; a write may land after its timeout
    credit_previous_balance: Optional[int] = None
    credit_target_balance: Optional[int] = None
    settlement_ref: Optional[str] = None
    payment_type: Optional[str] = None
    credit_attempts: int = 0
    last_credit_error: Optional[str] = None
    credit_escalated: bool = False

    stale_alerted: bool = False
    version: int = 1

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @computed_field
    @property
    def is_credit_held(self) -> bool:
        return self.credit_pending_amount is not None

    @staticmethod
    def generate_order_id(identity: str, now: Optional[datetime] = None) -> str:
        ts = int((now or utcnow()).timestamp() * 1000)
        return f"TOPUP_{identity}_{ts}_{secrets.token_hex(4)}"

    def transition_to(self, new_status: OrderStatus) -> "TopupOrder":
        if self.status.is_terminal:
            raise InvalidTransition(
                f"{self.order_id} is {self.status.value}; cannot move to {new_status.value}"
            )
        if new_status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise InvalidTransition(
                f"{self.order_id}: {self.status.value} -> {new_status.value} not allowed"
            )
        return self.model_copy(update={
            "previous_status": self.status,
            "status": new_status,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })

    def with_updates(self, **changes: Any) -> "TopupOrder":
        changes.setdefault("updated_at", utcnow())
        changes["version"] = self.version + 1
        return self.model_copy(update=changes)


class OrderTicket(BaseModel):
    """Returned to the chat surface after a successful admission."""
    order_id: str
    amount: int
    status: OrderStatus
    payment_ref: str
    payment_url: str
    qr_code: Optional[str] = None
    expires_at: datetime


# ============================================================================
# SECTION 4: LEDGER RECORDS (write-once)
# ============================================================================

class Transaction(BaseModel):
    """Completed top-up."""
    model_config = ConfigDict(frozen=True)

    transaction_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str = "topup"
    order_id: str
    identity: str
    driver_name: str
    amount: int
    previous_balance: int
    new_balance: int
    gateway_ref: Optional[str] = None
    payment_type: Optional[str] = None
    order_created_at: datetime
    completed_at: datetime = Field(default_factory=utcnow)


class FinalizedOrder(BaseModel):
    """Terminal snapshot of an order that left the live table."""
    model_config = ConfigDict(frozen=True)

    order_id: str
    identity: str
    amount: int
    status: OrderStatus
    gateway_ref: Optional[str] = None
    created_at: datetime
    finalized_at: datetime = Field(default_factory=utcnow)


class ReconcileOutcome(BaseModel):
    """Result of applying one gateway event."""
    order_id: str
    status: OrderStatus
    new_balance: Optional[int] = None
    transaction_id: Optional[str] = None
    notified: bool = True
