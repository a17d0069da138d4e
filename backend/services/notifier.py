# services/notifier.py
# ============================================================================
# DRIVER TOP-UP BOT — NOTIFIER
# ============================================================================
# Renders driver and operator messages and hands them to a message
# transport. Delivery is best effort: a failed send is logged and never
# changes order state.
#
# Transports:
#   - HttpMessageTransport     POSTs to the WhatsApp bridge over httpx
#   - InMemoryMessageTransport keeps an outbox (tests, local runs)
#
# pip install httpx structlog
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

import httpx
import structlog

from schemas.topup import DriverRecord, OrderStatus, TopupOrder, utcnow
from services.formatting import format_rupiah, format_timestamp

logger = structlog.get_logger().bind(component="notifier")


# =============================================================================
# TRANSPORTS
# =============================================================================

class IMessageTransport(ABC):
    """Outbound chat delivery."""

    @abstractmethod
    async def send(self, to: str, text: str) -> None:
        """Deliver one text message. Raises on failure."""
        pass

    async def close(self) -> None:
        pass


@dataclass
class SentMessage:
    to: str
    text: str
    sent_at: datetime = field(default_factory=utcnow)


class InMemoryMessageTransport(IMessageTransport):
    """Records every message instead of sending it."""

    def __init__(self):
        self.outbox: List[SentMessage] = []
        self.fail_sends = 0

    async def send(self, to: str, text: str) -> None:
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise ConnectionError(f"simulated send failure to {to}")
        self.outbox.append(SentMessage(to=to, text=text))

    def messages_to(self, to: str) -> List[str]:
        return [m.text for m in self.outbox if m.to == to]


class HttpMessageTransport(IMessageTransport):
    """
    Sends through an HTTP WhatsApp bridge.

    POST {base_url}/send  {"to": "<identity>@c.us", "text": "..."}
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )

    @staticmethod
    def chat_id(to: str) -> str:
        return to if "@" in to else f"{to}@c.us"

    async def send(self, to: str, text: str) -> None:
        response = await self._client.post("/send", json={"to": self.chat_id(to), "text": text})
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


# =============================================================================
# TEMPLATES
# =============================================================================

_RETRY_HINT = "Silakan buat ulang pembayaran dengan command:\nTOPUP <jumlah>"

_DRIVER_CLOSED = {
    OrderStatus.EXPIRED: "⏰ Pembayaran top-up {amount} telah expired.\n\n" + _RETRY_HINT,
    OrderStatus.FAILED: "❌ Pembayaran top-up {amount} gagal.\n\nSilakan coba lagi dengan command:\nTOPUP <jumlah>",
    OrderStatus.CANCELLED: "🚫 Pembayaran top-up {amount} dibatalkan.\n\n" + _RETRY_HINT,
}

_OPERATOR_HEADERS = {
    OrderStatus.SUCCEEDED: "✅ *PAYMENT SUCCESS*",
    OrderStatus.EXPIRED: "⏰ *PAYMENT EXPIRED*",
    OrderStatus.FAILED: "❌ *PAYMENT FAILED*",
    OrderStatus.CANCELLED: "🚫 *PAYMENT CANCELLED*",
    OrderStatus.PENDING: "⏳ *PAYMENT PENDING*",
}


def render_topup_success(order: TopupOrder, amount: int, new_balance: int) -> str:
    return (
        "🎉 *TOP-UP BERHASIL!*\n\n"
        f"💰 Jumlah: {format_rupiah(amount)}\n"
        f"💳 Order ID: {order.order_id}\n"
        f"💵 Saldo Baru: {format_rupiah(new_balance)}\n"
        f"⏰ Waktu: {format_timestamp()}\n\n"
        "Terima kasih telah menggunakan layanan top-up kami! 🚗💨"
    )


def render_order_closed(order: TopupOrder, status: OrderStatus) -> str:
    return _DRIVER_CLOSED[status].format(amount=format_rupiah(order.amount))


def render_processing(order: TopupOrder) -> str:
    return (
        f"⏳ Pembayaran top-up {format_rupiah(order.amount)} sedang diproses.\n\n"
        "Silakan selesaikan pembayaran Anda."
    )


def render_operator_report(
    order: TopupOrder,
    status: OrderStatus,
    new_balance: Optional[int] = None,
) -> str:
    lines = [
        _OPERATOR_HEADERS[status],
        "",
        f"💳 Payment ID: {order.gateway_payment_ref or '-'}",
        f"📋 Order ID: {order.order_id}",
        f"📱 Driver: {order.identity} ({order.snapshot.name})",
        f"💰 Amount: {format_rupiah(order.amount)}",
    ]
    if new_balance is not None:
        lines.append(f"💵 New Balance: {format_rupiah(new_balance)}")
    lines.append(f"⏰ Time: {format_timestamp()}")
    return "\n".join(lines)


def render_credit_failure(order: TopupOrder, error: str, attempts: int) -> str:
    return (
        "❌ *PAYMENT ERROR*\n\n"
        f"💳 Payment ID: {order.gateway_payment_ref or '-'}\n"
        f"📋 Order ID: {order.order_id}\n"
        f"📱 Driver: {order.identity} ({order.snapshot.name})\n"
        f"💰 Amount: {format_rupiah(order.credit_pending_amount or order.amount)}\n"
        f"⚠️ Error: Gagal update saldo driver ({error})\n"
        f"🔁 Percobaan: {attempts}\n"
        f"⏰ Time: {format_timestamp()}\n\n"
        "Order ditahan untuk rekonsiliasi manual."
    )


def render_stale_order(order: TopupOrder, age_minutes: int) -> str:
    return (
        "⚠️ *ORDER BELUM SELESAI*\n\n"
        f"📋 Order ID: {order.order_id}\n"
        f"📱 Driver: {order.identity} ({order.snapshot.name})\n"
        f"💰 Amount: {format_rupiah(order.amount)}\n"
        f"📌 Status: {order.status.value}\n"
        f"⌛ Umur: {age_minutes} menit\n"
        f"⏰ Dibuat: {format_timestamp(order.created_at)}"
    )


def render_balance(driver: DriverRecord) -> str:
    lines = [
        "💰 *INFORMASI SALDO*",
        "",
        f"👤 Nama: {driver.name}",
        f"📱 Nomor: {driver.identity}",
        f"💵 Saldo: {format_rupiah(driver.balance)}",
    ]
    if driver.status:
        lines.append(f"📌 Status: {driver.status}")
    if driver.last_update:
        lines.append(f"🕐 Update terakhir: {driver.last_update}")
    return "\n".join(lines)


# =============================================================================
# NOTIFIER
# =============================================================================

class Notifier:
    """Driver- and operator-facing notifications."""

    def __init__(
        self,
        transport: IMessageTransport,
        admin_number: Optional[str] = None,
        send_timeout_seconds: float = 10.0,
    ):
        self.transport = transport
        self.admin_number = admin_number
        self.send_timeout_seconds = send_timeout_seconds

    async def _send(self, to: Optional[str], text: str, kind: str) -> bool:
        if not to:
            return False
        try:
            async with asyncio.timeout(self.send_timeout_seconds):
                await self.transport.send(to, text)
            logger.debug("message_sent", to=to, kind=kind)
            return True
        except Exception as e:
            logger.warning("message_send_failed", to=to, kind=kind, error=str(e))
            return False

    async def send_text(self, to: str, text: str) -> bool:
        return await self._send(to, text, "reply")

    async def topup_succeeded(self, order: TopupOrder, amount: int, new_balance: int) -> None:
        await self._send(order.identity, render_topup_success(order, amount, new_balance), "topup_success")
        await self._send(
            self.admin_number,
            render_operator_report(order, OrderStatus.SUCCEEDED, new_balance),
            "operator_success",
        )

    async def order_closed(self, order: TopupOrder, status: OrderStatus) -> None:
        await self._send(order.identity, render_order_closed(order, status), f"topup_{status.value}")
        await self._send(
            self.admin_number,
            render_operator_report(order, status),
            f"operator_{status.value}",
        )

    async def payment_processing(self, order: TopupOrder) -> None:
        await self._send(order.identity, render_processing(order), "topup_processing")
        await self._send(
            self.admin_number,
            render_operator_report(order, OrderStatus.PENDING),
            "operator_pending",
        )

    async def credit_failed(self, order: TopupOrder, error: str, attempts: int) -> None:
        if not self.admin_number:
            logger.error("operator_alert_unrouted", order_id=order.order_id, reason="ADMIN_NUMBER not set")
            return
        await self._send(self.admin_number, render_credit_failure(order, error, attempts), "operator_credit_failed")

    async def stale_order(self, order: TopupOrder, age_minutes: int) -> None:
        await self._send(self.admin_number, render_stale_order(order, age_minutes), "operator_stale_order")


__all__ = [
    "IMessageTransport",
    "SentMessage",
    "InMemoryMessageTransport",
    "HttpMessageTransport",
    "Notifier",
    "render_topup_success",
    "render_order_closed",
    "render_processing",
    "render_operator_report",
    "render_credit_failure",
    "render_stale_order",
    "render_balance",
]
