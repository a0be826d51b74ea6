"""
Credit Wallet

This package provides:
- A credits ledger: integer balances backed by append-only transactions
- Purchase workflow: pending → payment link → completed, credited once on confirm
- Redemption workflow: credits debited when the redemption is submitted
- Client-facing purchase stages and a status poller
- Best-effort SMS/email notifications and spreadsheet mirroring
"""

from .models import (
    PurchaseStage,
    PurchaseStatus,
    TransactionStatus,
    TransactionType,
)
from .poller import PurchaseStatusPoller
from .service import WalletService
from .stages import derive_stage

__all__ = [
    "PurchaseStage",
    "PurchaseStatus",
    "TransactionStatus",
    "TransactionType",
    "PurchaseStatusPoller",
    "WalletService",
    "derive_stage",
]
