# integrations/__init__.py
from integrations.midtrans import (
    IPaymentGateway,
    MidtransClient,
    compute_signature,
    map_transaction_status,
    parse_gross_amount,
)

__all__ = [
    "IPaymentGateway",
    "MidtransClient",
    "compute_signature",
    "map_transaction_status",
    "parse_gross_amount",
]
