# schemas/errors.py
# ============================================================================
# DRIVER TOP-UP BOT — ERROR TAXONOMY
# ============================================================================
# Admission errors are reported to the requesting driver, gateway errors ask
# the driver to try again, reconcile errors stay operator-facing.
# ============================================================================

from typing import Optional


GENERIC_FAILURE_MESSAGE = "❌ Terjadi kesalahan sistem. Silakan coba lagi."


class TopupError(Exception):
    """Base class for every error raised by the top-up core."""

    code = "topup_error"
    default_user_message = GENERIC_FAILURE_MESSAGE

    def __init__(self, detail: str = "", user_message: Optional[str] = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.user_message = user_message or self.default_user_message


class InvalidTransition(TopupError):
    code = "invalid_transition"


# =============================================================================
# ADMISSION
# =============================================================================

class AdmissionError(TopupError):
    code = "admission_error"


class InvalidIdentity(AdmissionError):
    code = "invalid_identity"
    default_user_message = "❌ Format nomor WhatsApp tidak valid."


class AmountOutOfRange(AdmissionError):
    code = "amount_out_of_range"
    default_user_message = (
        "❌ Jumlah top-up tidak valid. Minimum Rp 1.000, maksimum Rp 10.000.000"
    )


class UnknownDriver(AdmissionError):
    code = "unknown_driver"
    default_user_message = "❌ Nomor WhatsApp tidak terdaftar sebagai driver."


class DuplicatePending(AdmissionError):
    code = "duplicate_pending"
    default_user_message = (
        "⏳ Anda masih memiliki pembayaran yang pending. "
        "Silakan selesaikan terlebih dahulu."
    )


class RateLimited(AdmissionError):
    code = "rate_limited"
    default_user_message = "⏱️ Terlalu banyak request. Silakan tunggu beberapa menit."


# =============================================================================
# PAYMENT GATEWAY
# =============================================================================

class GatewayError(TopupError):
    code = "gateway_error"
    default_user_message = "❌ Gagal membuat pembayaran. Silakan coba lagi."


class GatewayTimeout(GatewayError):
    code = "gateway_timeout"


class SignatureError(TopupError):
    code = "signature_invalid"


class MalformedWebhook(TopupError):
    code = "malformed_webhook"

    def __init__(self, detail: str = "", unsupported: bool = False):
        super().__init__(detail)
        self.unsupported = unsupported


# =============================================================================
# DRIVER DIRECTORY
# =============================================================================

class DirectoryError(TopupError):
    code = "directory_error"


class DirectoryTimeout(DirectoryError):
    code = "directory_timeout"


# =============================================================================
# RECONCILIATION
# =============================================================================

class ReconcileError(TopupError):
    code = "reconcile_error"

    def __init__(self, order_id: str, detail: str = ""):
        super().__init__(detail or f"{self.code}: {order_id}")
        self.order_id = order_id


class OrderNotFound(ReconcileError):
    code = "order_not_found"


class AlreadyFinalized(ReconcileError):
    code = "already_finalized"


class DirectoryWriteFailure(ReconcileError):
    code = "directory_write_failure"


__all__ = [
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
]
