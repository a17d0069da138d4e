# handlers/message_handler.py
# ============================================================================
# DRIVER TOP-UP BOT — CHAT COMMAND HANDLER
# ============================================================================
# Turns one inbound chat message into one reply. Every TopupError maps to
# its localized user_message; anything unexpected gets the generic failure
# text while the traceback goes to the log.
# ============================================================================

from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel, Field

from handlers.command_parser import CommandName, ParsedCommand, parse_command
from pipeline.orchestrator import TopupOrchestrator
from schemas.errors import GENERIC_FAILURE_MESSAGE, TopupError
from schemas.topup import OrderTicket
from services.formatting import format_rupiah, format_timestamp
from services.notifier import render_balance

logger = structlog.get_logger().bind(component="message_handler")

VERSION = "1.0.0"

TOPUP_USAGE = "❌ Format: TOPUP <jumlah>\nContoh: TOPUP 50000"


class BotReply(BaseModel):
    success: bool
    text: str
    command: CommandName = CommandName.UNKNOWN
    data: Dict[str, Any] = Field(default_factory=dict)


def render_help(min_amount: int, max_amount: int) -> str:
    return (
        "📚 *BANTUAN TOP-UP BOT*\n\n"
        "*Commands yang tersedia:*\n\n"
        "💰 *TOPUP <jumlah>* - Top-up saldo\n"
        "   Contoh: TOPUP 50000\n"
        f"   Min: {format_rupiah(min_amount)}, Max: {format_rupiah(max_amount)}\n\n"
        "💵 *SALDO* - Cek saldo driver\n\n"
        "❓ *HELP* - Tampilkan bantuan ini\n\n"
        "ℹ️ *INFO* - Informasi bot\n\n"
        "*Metode Pembayaran:*\n"
        "• QRIS (GoPay, OVO, DANA, dll)\n"
        "• Bank Transfer\n"
        "• E-Wallet\n\n"
        "*Durasi:* Pembayaran expired dalam 24 jam"
    )


def render_info() -> str:
    return (
        "ℹ️ *INFORMASI BOT*\n\n"
        "🤖 *Top-Up Driver Bot*\n"
        "📱 Platform: WhatsApp\n"
        "💳 Payment Gateway: Midtrans\n"
        "📊 Database: Google Sheets\n\n"
        "*Fitur:*\n"
        "✅ Top-up saldo driver\n"
        "✅ Cek saldo real-time\n"
        "✅ Multiple payment methods\n"
        "✅ Webhook notifications\n"
        "✅ Admin monitoring\n\n"
        f"*Versi:* {VERSION}"
    )


def render_unknown(text: str) -> str:
    return (
        "❓ *COMMAND TIDAK DIKENAL*\n\n"
        f'Pesan: "{text}"\n\n'
        "*Commands yang tersedia:*\n"
        "• TOPUP <jumlah> - Top-up saldo\n"
        "• SALDO - Cek saldo\n"
        "• HELP - Bantuan\n"
        "• INFO - Informasi bot\n\n"
        "Ketik *HELP* untuk melihat bantuan lengkap."
    )


def render_ticket(ticket: OrderTicket) -> str:
    lines = [
        "💳 *PEMBAYARAN TOP-UP*",
        "",
        f"💰 Jumlah: {format_rupiah(ticket.amount)}",
        f"💳 Order ID: {ticket.order_id}",
        f"⏰ Expired: {format_timestamp(ticket.expires_at)}",
        "",
        "Silakan scan QR code atau klik link pembayaran:",
        f"🔗 Link: {ticket.payment_url}",
    ]
    if ticket.qr_code and ticket.qr_code != ticket.payment_url:
        lines.append(f"📱 QR Code: {ticket.qr_code}")
    lines += ["", "Saldo akan otomatis bertambah setelah pembayaran berhasil."]
    return "\n".join(lines)


class MessageHandler:
    """Dispatches parsed chat commands to the orchestrator."""

    def __init__(self, orchestrator: TopupOrchestrator):
        self.orchestrator = orchestrator

    async def handle(self, sender: str, text: Optional[str]) -> BotReply:
        command = parse_command(text)
        log = logger.bind(sender=sender, command=command.name.value)
        log.info("message_received")

        try:
            if command.name == CommandName.TOPUP:
                return await self._topup(sender, command)
            if command.name == CommandName.SALDO:
                return await self._balance(sender)
            if command.name == CommandName.HELP:
                return BotReply(
                    success=True,
                    command=command.name,
                    text=render_help(self.orchestrator.min_amount, self.orchestrator.max_amount),
                )
            if command.name == CommandName.INFO:
                return BotReply(success=True, command=command.name, text=render_info())
            return BotReply(success=False, command=command.name, text=render_unknown(command.raw))

        except TopupError as e:
            log.info("command_rejected", code=e.code, detail=e.detail)
            return BotReply(
                success=False,
                command=command.name,
                text=e.user_message,
                data={"error": e.code},
            )
        except Exception:
            log.exception("command_failed")
            return BotReply(
                success=False,
                command=command.name,
                text=GENERIC_FAILURE_MESSAGE,
                data={"error": "internal_error"},
            )

    async def _topup(self, sender: str, command: ParsedCommand) -> BotReply:
        amount = command.amount
        if amount is None:
            return BotReply(success=False, command=command.name, text=TOPUP_USAGE, data={"error": "usage"})

        ticket = await self.orchestrator.create_order(sender, amount)
        return BotReply(
            success=True,
            command=command.name,
            text=render_ticket(ticket),
            data=ticket.model_dump(mode="json"),
        )

    async def _balance(self, sender: str) -> BotReply:
        driver = await self.orchestrator.lookup_driver(sender)
        return BotReply(
            success=True,
            command=CommandName.SALDO,
            text=render_balance(driver),
            data={"identity": driver.identity, "balance": driver.balance},
        )


__all__ = [
    "BotReply",
    "MessageHandler",
    "render_help",
    "render_info",
    "render_unknown",
    "render_ticket",
    "TOPUP_USAGE",
]
