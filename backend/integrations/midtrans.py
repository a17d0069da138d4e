# integrations/midtrans.py
# ============================================================================
# DRIVER TOP-UP BOT — MIDTRANS PAYMENT GATEWAY CLIENT
# ============================================================================
# Snap payment creation, status lookup and authenticated webhook parsing.
#
# Webhook authenticity:
#   signature_key == sha512(order_id + status_code + gross_amount + server_key)
# compared in constant time before any field is trusted.
#
# pip install httpx structlog
# ============================================================================

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Union

import httpx
import structlog

from schemas.errors import GatewayError, GatewayTimeout, MalformedWebhook, SignatureError
from schemas.topup import DriverRecord, GatewayEvent, GatewayEventKind, PaymentHandle, utcnow

logger = structlog.get_logger().bind(component="midtrans")

SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1"
SNAP_PRODUCTION_URL = "https://app.midtrans.com/snap/v1"
API_SANDBOX_URL = "https://api.sandbox.midtrans.com/v2"
API_PRODUCTION_URL = "https://api.midtrans.com/v2"

ENABLED_PAYMENTS = ["qris", "bank_transfer", "gopay", "shopeepay"]

RawPayload = Union[bytes, str, Mapping[str, Any]]


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGateway(ABC):
    """Payment gateway contract used by the orchestrator."""

    @abstractmethod
    async def create_payment(self, order_id: str, amount: int, customer: DriverRecord) -> PaymentHandle:
        """
        Raises:
            GatewayError, GatewayTimeout
        """
        pass

    @abstractmethod
    async def check_status(self, order_id: str) -> GatewayEvent:
        pass

    @abstractmethod
    def parse_webhook(self, raw_payload: RawPayload, signature: Optional[str] = None) -> GatewayEvent:
        """
        Raises:
            MalformedWebhook: not JSON, missing fields, unsupported status
            SignatureError: authenticity check failed
        """
        pass


# =============================================================================
# STATUS MAPPING
# =============================================================================

def map_transaction_status(transaction_status: str, fraud_status: Optional[str]) -> GatewayEventKind:
    status = (transaction_status or "").lower()
    fraud = (fraud_status or "").lower()

    if status in ("capture", "settlement"):
        if fraud == "challenge":
            return GatewayEventKind.PENDING
        if fraud in ("", "accept"):
            return GatewayEventKind.SUCCESS
        # fraud "deny"
        return GatewayEventKind.FAILED
    if status == "pending":
        return GatewayEventKind.PENDING
    if status in ("deny", "failure"):
        return GatewayEventKind.FAILED
    if status == "expire":
        return GatewayEventKind.EXPIRED
    if status == "cancel":
        return GatewayEventKind.CANCELLED

    raise MalformedWebhook(f"unsupported transaction_status {transaction_status!r}", unsupported=True)


def parse_gross_amount(value: Any) -> int:
    """'50000.00' -> 50000. Fractional rupiah is rejected."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise MalformedWebhook(f"gross_amount not numeric: {value!r}") from e
    if not amount.is_finite() or amount != amount.to_integral_value():
        raise MalformedWebhook(f"gross_amount not a whole amount: {value!r}")
    return int(amount)


def compute_signature(order_id: str, status_code: str, gross_amount: str, server_key: str) -> str:
    payload = f"{order_id}{status_code}{gross_amount}{server_key}".encode("utf-8")
    return hashlib.sha512(payload).hexdigest()


# =============================================================================
# CLIENT
# =============================================================================

class MidtransClient(IPaymentGateway):
    """
    Midtrans Snap + Core API over httpx.

    Authentication is HTTP basic with the server key as user name and an
    empty password.
    """

    def __init__(
        self,
        server_key: str,
        is_production: bool = False,
        finish_url: str = "https://example.com/payment/finish",
        expiry_hours: int = 24,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key
        self.is_production = is_production
        self.finish_url = finish_url
        self.expiry_hours = expiry_hours
        self._snap_url = SNAP_PRODUCTION_URL if is_production else SNAP_SANDBOX_URL
        self._api_url = API_PRODUCTION_URL if is_production else API_SANDBOX_URL
        self._client = httpx.AsyncClient(
            timeout=timeout_seconds,
            auth=(server_key, ""),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            transport=transport,
        )
        logger.info("midtrans_initialized", mode="production" if is_production else "sandbox")

    async def close(self) -> None:
        await self._client.aclose()

    def status(self) -> Dict[str, Any]:
        return {
            "service": "midtrans",
            "mode": "production" if self.is_production else "sandbox",
            "server_key_set": bool(self.server_key),
        }

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    def build_transaction(self, order_id: str, amount: int, customer: DriverRecord) -> Dict[str, Any]:
        return {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "item_details": [{
                "id": "DRIVER_TOPUP",
                "price": amount,
                "quantity": 1,
                "name": "Driver Top Up",
            }],
            "customer_details": {
                "first_name": customer.name,
                "phone": customer.identity,
                "email": customer.email or None,
            },
            "callbacks": {"finish": self.finish_url},
            "enabled_payments": ENABLED_PAYMENTS,
            "expiry": {"unit": "hours", "duration": self.expiry_hours},
        }

    async def create_payment(self, order_id: str, amount: int, customer: DriverRecord) -> PaymentHandle:
        body = self.build_transaction(order_id, amount, customer)
        try:
            response = await self._client.post(f"{self._snap_url}/transactions", json=body)
        except httpx.TimeoutException as e:
            logger.error("midtrans_create_timeout", order_id=order_id)
            raise GatewayTimeout(f"create payment timed out for {order_id}") from e
        except httpx.HTTPError as e:
            logger.error("midtrans_create_failed", order_id=order_id, error=str(e))
            raise GatewayError(f"create payment failed for {order_id}: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(
                "midtrans_create_rejected",
                order_id=order_id,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayError(f"gateway answered {response.status_code} for {order_id}")

        data = response.json()
        token = data.get("token")
        redirect_url = data.get("redirect_url")
        if not token or not redirect_url:
            raise GatewayError(f"gateway response for {order_id} lacks token/redirect_url")

        logger.info("midtrans_payment_created", order_id=order_id, amount=amount)
        return PaymentHandle(
            ref=token,
            url=redirect_url,
            qr=redirect_url,
            expires_at=utcnow() + timedelta(hours=self.expiry_hours),
        )

    async def check_status(self, order_id: str) -> GatewayEvent:
        try:
            response = await self._client.get(f"{self._api_url}/{order_id}/status")
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"status check timed out for {order_id}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"status check failed for {order_id}: {e}") from e

        if response.status_code != 200:
            raise GatewayError(f"gateway answered {response.status_code} for {order_id}")

        data = response.json()
        # Core API reports "not found" inside a 200 body
        if str(data.get("status_code")) == "404":
            raise GatewayError(f"gateway has no transaction {order_id}")
        return self._to_event(data)

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    def parse_webhook(self, raw_payload: RawPayload, signature: Optional[str] = None) -> GatewayEvent:
        payload = self._decode(raw_payload)

        missing = [k for k in ("order_id", "status_code", "gross_amount") if not payload.get(k)]
        if missing:
            raise MalformedWebhook(f"notification missing fields: {', '.join(missing)}")

        self.verify_signature(payload, signature)
        return self._to_event(payload)

    def verify_signature(self, payload: Mapping[str, Any], signature: Optional[str] = None) -> None:
        provided = signature or payload.get("signature_key")
        if not provided:
            raise SignatureError("notification carries no signature")
        if not self.server_key:
            raise SignatureError("server key not configured; cannot authenticate notification")

        expected = compute_signature(
            str(payload["order_id"]),
            str(payload["status_code"]),
            str(payload["gross_amount"]),
            self.server_key,
        )
        if not hmac.compare_digest(expected, str(provided)):
            logger.warning("midtrans_signature_mismatch", order_id=payload.get("order_id"))
            raise SignatureError(f"bad signature for {payload.get('order_id')}")

    @staticmethod
    def _decode(raw_payload: RawPayload) -> Dict[str, Any]:
        if isinstance(raw_payload, Mapping):
            return dict(raw_payload)
        try:
            payload = json.loads(raw_payload)
        except (TypeError, ValueError) as e:
            raise MalformedWebhook("notification body is not JSON") from e
        if not isinstance(payload, dict):
            raise MalformedWebhook("notification body is not a JSON object")
        return payload

    @staticmethod
    def _to_event(payload: Mapping[str, Any]) -> GatewayEvent:
        transaction_status = payload.get("transaction_status")
        if not transaction_status:
            raise MalformedWebhook("notification missing transaction_status")

        kind = map_transaction_status(transaction_status, payload.get("fraud_status"))
        return GatewayEvent(
            order_id=str(payload["order_id"]),
            kind=kind,
            amount=parse_gross_amount(payload.get("gross_amount")),
            gateway_ref=payload.get("transaction_id"),
            transaction_status=transaction_status,
            fraud_status=payload.get("fraud_status"),
            payment_type=payload.get("payment_type"),
        )


__all__ = [
    "IPaymentGateway",
    "MidtransClient",
    "map_transaction_status",
    "parse_gross_amount",
    "compute_signature",
]
